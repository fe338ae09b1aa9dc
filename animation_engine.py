#!/usr/bin/env python3
"""
╔══════════════════════════════════════════════════════════════════════════════╗
║                                                                              ║
║              SYMBOL RIGGER - ANIMATION ENGINE CORE DATA MODEL                ║
║                                                                              ║
║   • Bone trees with anatomical typing, constraints and physics              ║
║   • Attachments, IK chain descriptors, default pose snapshots               ║
║   • Keyframes, tracks and loop-safe animation sequences                     ║
║   • Timeline playback state                                                 ║
║                                                                              ║
╚══════════════════════════════════════════════════════════════════════════════╝

Every other module builds on these structures. Times are milliseconds,
rotations are radians; exporters convert to whatever their target expects.
"""

from __future__ import annotations
import copy
import math
import time
import uuid
from enum import Enum
from dataclasses import dataclass, field, replace
from typing import Dict, List, Tuple, Optional, Iterator, Any
import logging

logger = logging.getLogger("SymbolRigger.Anim")
logger.setLevel(logging.INFO)
if not logger.handlers:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(
        '\033[36m\033[1mANIM\033[0m: \033[36m%(message)s\033[0m'
    ))
    logger.addHandler(handler)

# =============================================================================
# ERRORS
# =============================================================================

class RiggerError(Exception):
    """Base class for every error raised by the rigging pipeline"""


class InvalidInputError(RiggerError, ValueError):
    """Classifier, segmentation or argument payload failed validation"""


class SkeletonStructureError(RiggerError):
    """Bone graph is not a single rooted tree (duplicate id, missing parent, cycle)"""


class ResourceError(RiggerError):
    """Image or mask could not be decoded / rasterised"""


class TimelineError(RiggerError):
    """Playback or track edit requested in an invalid state"""


class ExportError(RiggerError, ValueError):
    """Export requested for an unknown format or without a sequence"""


class NotFoundError(RiggerError, KeyError):
    """Unknown id in one of the engine registries"""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else ""

# =============================================================================
# ENUMS AND CONSTANTS
# =============================================================================

class AnatomyType(Enum):
    """Skeleton-level anatomy classification"""
    INSECT = "insect"
    BIRD = "bird"
    MAMMAL = "mammal"
    MECHANICAL = "mechanical"
    MAGICAL = "magical"
    ABSTRACT = "abstract"


class BoneAnatomy(Enum):
    """Anatomical role of a single bone"""
    WING_ROOT = "wing-root"
    WING_MID = "wing-mid"
    WING_TIP = "wing-tip"
    BODY_CENTER = "body-center"
    BODY_SEGMENT = "body-segment"
    LIMB = "limb"
    JOINT = "joint"

    @property
    def is_wing(self) -> bool:
        return self.value.startswith("wing")

    @property
    def is_body(self) -> bool:
        return self.value.startswith("body")


class Complexity(Enum):
    SIMPLE = "simple"
    MEDIUM = "medium"
    COMPLEX = "complex"


class AttachmentType(Enum):
    SKIN = "skin"
    FEATHER = "feather"
    WING_MEMBRANE = "wing-membrane"
    BODY_SHELL = "body-shell"
    DECORATION = "decoration"


class EaseType(Enum):
    """Keyframe easing functions"""
    LINEAR = "linear"
    EASE_IN = "ease-in"
    EASE_OUT = "ease-out"
    EASE_IN_OUT = "ease-in-out"
    BOUNCE = "bounce"
    ELASTIC = "elastic"


class Interpolation(Enum):
    SMOOTH = "smooth"
    STEPPED = "stepped"


class Archetype(Enum):
    """Named animation intent driving keyframe synthesis"""
    IDLE = "idle"
    WIN = "win"
    SCATTER = "scatter"


MIN_SCALE = 0.1

# =============================================================================
# TRANSFORMS, CONSTRAINTS, PHYSICS
# =============================================================================

@dataclass(frozen=True)
class Transform:
    """2D affine pose of a bone or attachment (rotation in radians)"""
    x: float = 0.0
    y: float = 0.0
    rotation: float = 0.0
    scale_x: float = 1.0
    scale_y: float = 1.0

    def to_dict(self) -> dict:
        return {
            "x": self.x,
            "y": self.y,
            "rotation": self.rotation,
            "scaleX": self.scale_x,
            "scaleY": self.scale_y,
        }


@dataclass
class BoneConstraints:
    """Allowed motion range for a bone; min/max are kept ordered"""
    rotation_min: float = -math.pi
    rotation_max: float = math.pi
    scale_min: float = MIN_SCALE
    scale_max: float = 3.0
    allow_translation: bool = True

    def __post_init__(self):
        if self.rotation_min > self.rotation_max:
            self.rotation_min, self.rotation_max = self.rotation_max, self.rotation_min
        if self.scale_min > self.scale_max:
            self.scale_min, self.scale_max = self.scale_max, self.scale_min

    @classmethod
    def mirrored(cls, limit: float, side: int, scale_min: float, scale_max: float,
                 allow_translation: bool = True,
                 back_limit: Optional[float] = None) -> 'BoneConstraints':
        """
        Rotation range for a left (-1) / right (+1) part.

        `limit` is the reach in the part's outward direction (`limit * side`)
        and `back_limit` the reach the other way; it defaults to `limit`,
        which makes the two sides share one symmetric range.
        """
        back = limit if back_limit is None else back_limit
        return cls(
            rotation_min=-back * side,
            rotation_max=limit * side,
            scale_min=scale_min,
            scale_max=scale_max,
            allow_translation=allow_translation,
        )

    def clamp_rotation(self, value: float) -> float:
        return max(self.rotation_min, min(self.rotation_max, value))

    def clamp_scale(self, value: float) -> float:
        return max(self.scale_min, min(self.scale_max, value))

    def to_dict(self) -> dict:
        return {
            "rotationMin": self.rotation_min,
            "rotationMax": self.rotation_max,
            "scaleMin": self.scale_min,
            "scaleMax": self.scale_max,
            "allowTranslation": self.allow_translation,
        }


@dataclass
class BonePhysics:
    mass: float = 1.0
    damping: float = 0.5
    elasticity: float = 0.5
    follow_parent: float = 0.5

    def to_dict(self) -> dict:
        return {
            "mass": self.mass,
            "damping": self.damping,
            "elasticity": self.elasticity,
            "followParent": self.follow_parent,
        }

# =============================================================================
# SKELETON STRUCTURES
# =============================================================================

@dataclass
class Bone:
    """A rigid transform node in a hierarchical skeleton"""
    id: str
    name: str
    parent: Optional[str]
    original_transform: Transform
    anatomy_type: BoneAnatomy
    length: float = 0.0
    thickness: float = 4.0
    flexibility: float = 0.5
    importance: float = 0.5
    constraints: BoneConstraints = field(default_factory=BoneConstraints)
    physics: BonePhysics = field(default_factory=BonePhysics)
    children: List[str] = field(default_factory=list)
    confidence: float = 1.0
    transform: Optional[Transform] = None

    def __post_init__(self):
        if self.transform is None:
            self.transform = self.original_transform
        self.flexibility = min(1.0, max(0.0, self.flexibility))
        self.importance = min(1.0, max(0.0, self.importance))

    @property
    def side(self) -> int:
        """-1 for left parts, +1 for right parts, 0 for centre-line bones"""
        if "left" in self.id:
            return -1
        if "right" in self.id:
            return 1
        return 0

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "parent": self.parent,
            "children": list(self.children),
            **self.transform.to_dict(),
            "original": self.original_transform.to_dict(),
            "length": self.length,
            "thickness": self.thickness,
            "anatomyType": self.anatomy_type.value,
            "flexibility": self.flexibility,
            "importance": self.importance,
            "constraints": self.constraints.to_dict(),
            "physics": self.physics.to_dict(),
        }


@dataclass
class BoneAttachment:
    """Renderable region bound to a bone"""
    id: str
    bone_id: str
    texture_id: str
    attachment_type: AttachmentType
    render_order: int = 0
    offset: Transform = field(default_factory=Transform)
    deformable: bool = False
    deform_vertices: List[Tuple[float, float]] = field(default_factory=list)


@dataclass
class IKConstraint:
    """IK chain descriptor: ordered bones reaching for a target"""
    id: str
    name: str
    target: str
    bones: List[str]
    bend_direction: int = 1
    mix: float = 1.0
    natural_motion: bool = True
    anatomically_correct: bool = True
    target_position: Optional[Tuple[float, float]] = None

    def __post_init__(self):
        if self.bend_direction not in (1, -1):
            raise InvalidInputError(f"bend_direction must be +1 or -1, got {self.bend_direction}")
        if not 0.0 <= self.mix <= 1.0:
            raise InvalidInputError(f"IK mix must be in [0, 1], got {self.mix}")


def validate_bone_tree(bones: Dict[str, Bone]) -> str:
    """
    Check the single-rooted tree invariant and return the root id.

    Raises:
        SkeletonStructureError: no root / several roots, dangling parent,
            key/id mismatch or a parent cycle
    """
    roots = []
    for key, bone in bones.items():
        if key != bone.id:
            raise SkeletonStructureError(f"Bone registered as '{key}' has id '{bone.id}'")
        if bone.parent is None:
            roots.append(bone.id)
        elif bone.parent not in bones:
            raise SkeletonStructureError(
                f"Bone '{bone.id}' references missing parent '{bone.parent}'")

    if len(roots) != 1:
        raise SkeletonStructureError(f"Skeleton must have exactly one root bone, found {len(roots)}")

    # Every walk must terminate at the root; anything else is a cycle
    for bone_id in bones:
        _walk_to_root(bones, bone_id)

    return roots[0]


def _walk_to_root(bones: Dict[str, Bone], bone_id: str) -> List[str]:
    path = []
    visited = set()
    current = bone_id
    while current is not None:
        if current in visited:
            raise SkeletonStructureError(f"Parent cycle detected at bone '{current}'")
        visited.add(current)
        path.append(current)
        bone = bones.get(current)
        if bone is None:
            raise SkeletonStructureError(f"Bone '{current}' is not part of this skeleton")
        current = bone.parent
    return path


@dataclass
class Skeleton:
    """Rooted bone tree built from one classifier result"""
    id: str
    name: str
    bones: Dict[str, Bone]
    root_bone: str
    anatomy_type: AnatomyType
    complexity: Complexity
    attachments: Dict[str, BoneAttachment] = field(default_factory=dict)
    ik_constraints: Dict[str, IKConstraint] = field(default_factory=dict)
    default_pose: Dict[str, Bone] = field(default_factory=dict)
    confidence: float = 1.0
    width: int = 0
    height: int = 0

    def validate(self) -> None:
        root = validate_bone_tree(self.bones)
        if root != self.root_bone:
            raise SkeletonStructureError(
                f"Declared root '{self.root_bone}' differs from actual root '{root}'")
        for bone in self.bones.values():
            for child in bone.children:
                if child not in self.bones or self.bones[child].parent != bone.id:
                    raise SkeletonStructureError(
                        f"Child link '{bone.id}' -> '{child}' disagrees with parent pointers")

    def get_bone(self, bone_id: str) -> Bone:
        try:
            return self.bones[bone_id]
        except KeyError:
            raise NotFoundError(f"Bone '{bone_id}' not found in skeleton '{self.id}'") from None

    def path_to_root(self, bone_id: str) -> List[str]:
        """Bone ids from `bone_id` up to and including the root"""
        return _walk_to_root(self.bones, bone_id)

    def bone_depth(self, bone_id: str) -> int:
        return len(self.path_to_root(bone_id)) - 1

    def iter_bones(self) -> Iterator[Bone]:
        """Depth-first, parents before children"""
        stack = [self.root_bone]
        while stack:
            bone = self.bones[stack.pop()]
            yield bone
            stack.extend(reversed(bone.children))

    def snapshot_pose(self) -> Dict[str, Bone]:
        return copy.deepcopy(self.bones)

    def reset_pose(self) -> None:
        for bone_id, stored in self.default_pose.items():
            if bone_id in self.bones:
                self.bones[bone_id].transform = stored.transform

    def wing_chain(self, side: str) -> List[str]:
        """Wing bone ids for one side, root first"""
        chain = [b.id for b in self.iter_bones()
                 if b.anatomy_type.is_wing and side in b.id]
        order = {BoneAnatomy.WING_ROOT: 0, BoneAnatomy.WING_MID: 1, BoneAnatomy.WING_TIP: 2}
        return sorted(chain, key=lambda bid: order[self.bones[bid].anatomy_type])

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "rootBone": self.root_bone,
            "anatomyType": self.anatomy_type.value,
            "complexity": self.complexity.value,
            "confidence": self.confidence,
            "bones": [b.to_dict() for b in self.iter_bones()],
            "attachments": len(self.attachments),
            "ikConstraints": [ik.id for ik in self.ik_constraints.values()],
        }

# =============================================================================
# KEYFRAMES, TRACKS, SEQUENCES
# =============================================================================

@dataclass(frozen=True)
class KeyframeProperties:
    """Animatable property snapshot; also the sampler's per-track output"""
    x: float = 0.0
    y: float = 0.0
    rotation: float = 0.0
    scale_x: float = 1.0
    scale_y: float = 1.0
    alpha: float = 1.0
    visible: bool = True

    @classmethod
    def from_transform(cls, transform: Transform, alpha: float = 1.0) -> 'KeyframeProperties':
        return cls(
            x=transform.x,
            y=transform.y,
            rotation=transform.rotation,
            scale_x=transform.scale_x,
            scale_y=transform.scale_y,
            alpha=alpha,
        )

    def to_dict(self) -> dict:
        return {
            "x": self.x,
            "y": self.y,
            "rotation": self.rotation,
            "scaleX": self.scale_x,
            "scaleY": self.scale_y,
            "alpha": self.alpha,
            "visible": self.visible,
        }


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:10]}"


@dataclass
class AnimationKeyframe:
    """Timestamped snapshot of one track"""
    time: float
    layer_id: str
    properties: KeyframeProperties
    easing: EaseType = EaseType.LINEAR
    interpolation: Interpolation = Interpolation.SMOOTH
    id: str = field(default_factory=lambda: new_id("kf"))

    def __post_init__(self):
        if not math.isfinite(self.time) or self.time < 0:
            raise InvalidInputError(f"Keyframe time must be a finite value >= 0, got {self.time}")

    def moved(self, time_ms: float) -> 'AnimationKeyframe':
        return replace(self, time=time_ms, id=new_id("kf"))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "time": self.time,
            "layerId": self.layer_id,
            "properties": self.properties.to_dict(),
            "easing": self.easing.value,
            "interpolation": self.interpolation.value,
        }


@dataclass
class AnimationTrack:
    """Keyframes of one bone/layer, kept ordered by time"""
    layer_id: str
    layer_name: str
    layer_type: str = "bone"
    color: str = "#6B7280"
    keyframes: List[AnimationKeyframe] = field(default_factory=list)
    locked: bool = False
    muted: bool = False
    solo: bool = False
    id: str = ""

    def __post_init__(self):
        if not self.id:
            self.id = f"track_{self.layer_id}"
        self.keyframes.sort(key=lambda kf: kf.time)

    def insert(self, keyframe: AnimationKeyframe) -> None:
        """Insert keeping time order; a keyframe at an existing time replaces it"""
        if self.locked:
            raise TimelineError(f"Track '{self.id}' is locked")
        for i, existing in enumerate(self.keyframes):
            if existing.time == keyframe.time:
                self.keyframes[i] = keyframe
                return
            if existing.time > keyframe.time:
                self.keyframes.insert(i, keyframe)
                return
        self.keyframes.append(keyframe)

    def remove(self, keyframe_id: str) -> AnimationKeyframe:
        if self.locked:
            raise TimelineError(f"Track '{self.id}' is locked")
        for i, kf in enumerate(self.keyframes):
            if kf.id == keyframe_id:
                return self.keyframes.pop(i)
        raise NotFoundError(f"Keyframe '{keyframe_id}' not found on track '{self.id}'")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "layerId": self.layer_id,
            "layerName": self.layer_name,
            "layerType": self.layer_type,
            "color": self.color,
            "locked": self.locked,
            "muted": self.muted,
            "solo": self.solo,
            "keyframes": [kf.to_dict() for kf in self.keyframes],
        }


@dataclass
class AnimationEvent:
    """Gameplay/UI hook fired at a point on the timeline"""
    name: str
    time: float
    int_value: int = 0
    float_value: float = 0.0
    string_value: str = ""


@dataclass
class SequenceMetadata:
    created: float = field(default_factory=lambda: time.time() * 1000)
    modified: float = field(default_factory=lambda: time.time() * 1000)
    creator: str = "Symbol Rigger"
    description: str = ""
    tags: List[str] = field(default_factory=list)


@dataclass
class AnimationSequence:
    """Complete animation: one track per bone/layer over `duration` ms"""
    name: str
    duration: float
    fps: int = 60
    tracks: List[AnimationTrack] = field(default_factory=list)
    loop: bool = True
    auto_reverse: bool = False
    metadata: SequenceMetadata = field(default_factory=SequenceMetadata)
    events: List[AnimationEvent] = field(default_factory=list)
    skeleton_id: Optional[str] = None
    id: str = field(default_factory=lambda: new_id("seq"))

    def __post_init__(self):
        if not math.isfinite(self.duration) or self.duration <= 0:
            raise InvalidInputError(f"Sequence duration must be > 0 ms, got {self.duration}")
        if self.fps <= 0:
            raise InvalidInputError(f"Sequence fps must be > 0, got {self.fps}")

    def get_track(self, track_or_layer_id: str) -> AnimationTrack:
        for track in self.tracks:
            if track.id == track_or_layer_id or track.layer_id == track_or_layer_id:
                return track
        raise NotFoundError(f"Track '{track_or_layer_id}' not found in sequence '{self.id}'")

    def validate(self) -> None:
        """Keyframe times inside [0, duration]; looping tracks start and end on the same pose"""
        for track in self.tracks:
            times = [kf.time for kf in track.keyframes]
            if times != sorted(times):
                raise InvalidInputError(f"Track '{track.id}' keyframes are not ordered by time")
            for t in times:
                if t > self.duration:
                    raise InvalidInputError(
                        f"Track '{track.id}' has keyframe at {t}ms beyond duration {self.duration}ms")
            if not track.keyframes or not self.loop:
                continue
            first, last = track.keyframes[0], track.keyframes[-1]
            if first.time != 0 or last.time != self.duration:
                raise InvalidInputError(f"Looping track '{track.id}' must have keyframes at 0 and duration")
            if first.properties != last.properties:
                raise InvalidInputError(f"Looping track '{track.id}' does not end on its start pose")

    def touch(self) -> None:
        self.metadata.modified = time.time() * 1000

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "duration": self.duration,
            "fps": self.fps,
            "loop": self.loop,
            "autoReverse": self.auto_reverse,
            "skeletonId": self.skeleton_id,
            "tracks": [t.to_dict() for t in self.tracks],
            "events": [
                {"name": e.name, "time": e.time} for e in self.events
            ],
            "metadata": {
                "created": self.metadata.created,
                "modified": self.metadata.modified,
                "creator": self.metadata.creator,
                "description": self.metadata.description,
                "tags": list(self.metadata.tags),
            },
        }

# =============================================================================
# TIMELINE STATE
# =============================================================================

@dataclass
class TimelineState:
    """Playback cursor plus editor selection/viewport fields"""
    current_time: float = 0.0
    is_playing: bool = False
    is_paused: bool = False
    playback_speed: float = 1.0
    selected_keyframes: List[str] = field(default_factory=list)
    selected_tracks: List[str] = field(default_factory=list)
    zoom: float = 1.0
    viewport_start: float = 0.0
    viewport_end: float = 5000.0
    snap_to_keyframes: bool = True
    onion_skinning: bool = False
    onion_skin_frames: int = 3


def parse_enum(enum_cls, value: Any, what: str):
    """Look up an enum member by value or name, raising InvalidInputError"""
    if isinstance(value, enum_cls):
        return value
    for member in enum_cls:
        if value == member.value or (isinstance(value, str) and value.upper().replace("-", "_") == member.name):
            return member
    allowed = ", ".join(m.value for m in enum_cls)
    raise InvalidInputError(f"Unknown {what} '{value}'. Expected one of: {allowed}")
