#!/usr/bin/env python3
"""
╔══════════════════════════════════════════════════════════════════════════════╗
║                    ANIMATION TEMPLATES / SYNTHESIZER                         ║
║                                                                              ║
║   Per-bone keyframe tracks for the idle / win / scatter archetypes          ║
║                                                                              ║
║   Each track gets:                                                           ║
║   • A start and end keyframe on the rest pose (seamless loop)               ║
║   • Intensity-tier motion (swing, flutter, pulse, float, breathe)           ║
║   • Wing flutter / wing spread driven by anatomy                            ║
║                                                                              ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

from __future__ import annotations
import math
from dataclasses import dataclass, replace
from typing import List, Optional, Tuple, Any
import logging

from animation_engine import (
    AnatomyType, Archetype, EaseType, Skeleton, Bone, BoneConstraints,
    KeyframeProperties, AnimationKeyframe, AnimationTrack, AnimationEvent,
    AnimationSequence, SequenceMetadata, InvalidInputError, parse_enum
)

logger = logging.getLogger("SymbolRigger.Anim")

# =============================================================================
# TUNING TABLES
# =============================================================================

ARCHETYPE_ENERGY = {
    Archetype.IDLE: 0.6,
    Archetype.WIN: 1.0,
    Archetype.SCATTER: 1.2,
}

ANATOMY_AMPLITUDE = {
    AnatomyType.INSECT: 0.8,
    AnatomyType.BIRD: 1.0,
    AnatomyType.MAGICAL: 1.3,
    AnatomyType.MECHANICAL: 0.5,
    AnatomyType.MAMMAL: 0.9,
    AnatomyType.ABSTRACT: 1.0,
}

HIGH_TIER_SCORE = 0.75
MEDIUM_TIER_SCORE = 0.4

LAYER_COLORS = {
    "weapon": "#DC2626",
    "armor": "#2563EB",
    "body": "#16A34A",
    "accessory": "#7C3AED",
    "clothing": "#EA580C",
    "effect": "#EC4899",
    "limb": "#CA8A04",
}
DEFAULT_LAYER_COLOR = "#6B7280"

LAYER_MOTION = {
    "weapon": "swing",
    "clothing": "flutter",
    "effect": "pulse",
}

WING_FLUTTER_SAMPLE_RATE = 30  # samples per second of animation

ANIMATION_PRESETS = [
    {
        "id": "idle_gentle",
        "name": "Gentle Idle",
        "description": "Subtle breathing and floating motion",
        "category": Archetype.IDLE.value,
        "duration": 3000,
    },
    {
        "id": "win_celebration",
        "name": "Win Celebration",
        "description": "Energetic celebration with wing spread and pulses",
        "category": Archetype.WIN.value,
        "duration": 2000,
    },
    {
        "id": "scatter_burst",
        "name": "Scatter Burst",
        "description": "Explosive burst of movement for scatter wins",
        "category": Archetype.SCATTER.value,
        "duration": 1500,
    },
]


def get_animation_presets() -> List[dict]:
    return [dict(p) for p in ANIMATION_PRESETS]


def intensity_tier(flexibility: float, archetype: Archetype) -> str:
    score = flexibility * ARCHETYPE_ENERGY[archetype]
    if score >= HIGH_TIER_SCORE:
        return "high"
    if score >= MEDIUM_TIER_SCORE:
        return "medium"
    return "low"


def bone_motion_class(bone: Bone) -> Optional[str]:
    if bone.anatomy_type.is_wing:
        return "flutter"
    if bone.anatomy_type.value == "limb":
        return "swing"
    return None

# =============================================================================
# MOTION TARGETS
# =============================================================================

@dataclass
class MotionTarget:
    """What the synthesizer animates: a bone or an extracted layer"""
    layer_id: str
    name: str
    layer_type: str
    base: KeyframeProperties
    constraints: BoneConstraints
    tier: str
    motion_class: Optional[str] = None
    amplitude: float = 1.0
    color: str = DEFAULT_LAYER_COLOR

    def clamp(self, props: KeyframeProperties) -> KeyframeProperties:
        c = self.constraints
        x, y = props.x, props.y
        if not c.allow_translation:
            x, y = self.base.x, self.base.y
        return replace(
            props,
            x=x,
            y=y,
            rotation=c.clamp_rotation(props.rotation),
            scale_x=c.clamp_scale(props.scale_x),
            scale_y=c.clamp_scale(props.scale_y),
            alpha=max(0.0, min(1.0, props.alpha)),
        )


@dataclass
class LayerRecord:
    """Validated extracted-layer record (bounds are percentages)"""
    layer_id: str
    name: str
    layer_type: str
    animation_potential: str
    bounds: Tuple[float, float, float, float]

    @classmethod
    def from_dict(cls, data: Any, index: int = 0) -> 'LayerRecord':
        if not isinstance(data, dict):
            raise InvalidInputError(f"layers[{index}] must be an object")
        layer_id = data.get("layerId") or data.get("id")
        if not isinstance(layer_id, str) or not layer_id:
            raise InvalidInputError(f"layers[{index}] needs a layerId")
        layer_type = data.get("type", "accessory")
        if layer_type not in LAYER_COLORS:
            raise InvalidInputError(
                f"Layer '{layer_id}' has unknown type {layer_type!r}; "
                f"expected one of {', '.join(LAYER_COLORS)}")
        potential = data.get("animationPotential", "medium")
        if potential not in ("high", "medium", "low"):
            raise InvalidInputError(f"Layer '{layer_id}' animationPotential must be high/medium/low")

        raw = data.get("refinedBounds") or data.get("bounds")
        if not isinstance(raw, dict):
            raise InvalidInputError(f"Layer '{layer_id}' has no refinedBounds")
        bounds = []
        for key in ("x", "y", "width", "height"):
            value = raw.get(key)
            if isinstance(value, bool) or not isinstance(value, (int, float)) \
                    or not math.isfinite(value) or not 0 <= value <= 100:
                raise InvalidInputError(f"Layer '{layer_id}' refinedBounds.{key} must be in [0, 100]")
            bounds.append(float(value))

        return cls(
            layer_id=layer_id,
            name=str(data.get("name") or layer_id),
            layer_type=layer_type,
            animation_potential=potential,
            bounds=tuple(bounds),
        )

# =============================================================================
# KEYFRAME TEMPLATES
# =============================================================================

Pose = Tuple[float, KeyframeProperties, EaseType]


class KeyframeTemplates:
    """Intermediate keyframe recipes; each returns (time, properties, easing) triples"""

    @staticmethod
    def swing(target: MotionTarget, duration: float) -> List[Pose]:
        """Weapon-style swing at 40%"""
        b, a = target.base, target.amplitude
        return [(duration * 0.4, replace(
            b,
            x=b.x + 20 * a,
            y=b.y - 10 * a,
            rotation=b.rotation + math.radians(45) * a,
            scale_x=b.scale_x + 0.1 * a,
            scale_y=b.scale_y + 0.1 * a,
        ), EaseType.EASE_OUT)]

    @staticmethod
    def flutter(target: MotionTarget, duration: float) -> List[Pose]:
        """Three decaying cloth/membrane beats at 25/50/75%"""
        b, a = target.base, target.amplitude
        poses = []
        for i in range(3):
            direction = 1 if i % 2 == 0 else -1
            excursion = (8 - i * 2) * a
            poses.append((duration * 0.25 * (i + 1), replace(
                b,
                x=b.x + excursion * direction,
                y=b.y + math.sin(i) * 3 * a,
                rotation=b.rotation + math.radians(5) * direction * a,
                scale_x=b.scale_x + math.sin(i) * 0.05 * a,
            ), EaseType.EASE_IN_OUT))
        return poses

    @staticmethod
    def pulse(target: MotionTarget, duration: float) -> List[Pose]:
        """Glow pulse at 50%"""
        b, a = target.base, target.amplitude
        return [(duration * 0.5, replace(
            b,
            scale_x=b.scale_x + 0.3 * a,
            scale_y=b.scale_y + 0.3 * a,
            alpha=0.8,
        ), EaseType.ELASTIC)]

    @staticmethod
    def gentle_float(target: MotionTarget, duration: float) -> List[Pose]:
        """Gentle hover at 50%"""
        b, a = target.base, target.amplitude
        return [(duration * 0.5, replace(
            b,
            y=b.y - 5 * a,
            rotation=b.rotation + math.radians(2) * a,
            scale_x=b.scale_x + 0.02 * a,
            scale_y=b.scale_y + 0.02 * a,
        ), EaseType.EASE_IN_OUT)]

    @staticmethod
    def breathe(target: MotionTarget, duration: float) -> List[Pose]:
        """Barely-there breathing at 60%"""
        b, a = target.base, target.amplitude
        return [(duration * 0.6, replace(
            b,
            y=b.y - 1 * a,
            scale_x=b.scale_x + 0.01 * a,
            scale_y=b.scale_y + 0.01 * a,
        ), EaseType.EASE_IN_OUT)]

    @staticmethod
    def wing_flutter(target: MotionTarget, duration: float, flexibility: float,
                     frequency: float, phase: float) -> List[Pose]:
        """Sinusoidal wing beat sampled across the whole duration"""
        b = target.base
        frames = max(2, math.ceil(duration / 1000.0 * WING_FLUTTER_SAMPLE_RATE))
        poses = []
        for frame in range(1, frames):
            t = frame / frames
            poses.append((duration * t, replace(
                b,
                rotation=b.rotation + math.sin(t * math.pi * frequency + phase) * flexibility * 0.5,
                scale_y=b.scale_y + math.sin(t * math.pi * frequency * 2 + phase) * flexibility * 0.2,
            ), EaseType.LINEAR))
        return poses

    @staticmethod
    def wing_spread(target: MotionTarget, duration: float, flexibility: float) -> List[Pose]:
        """Dramatic spread at the sin(2πt) peak"""
        b = target.base
        spread = flexibility
        return [(duration * 0.25, replace(
            b,
            rotation=b.rotation + spread * 0.8,
            scale_x=b.scale_x + spread * 0.3,
            scale_y=b.scale_y + spread * 0.2,
        ), EaseType.EASE_OUT)]


TIER_TEMPLATES = {
    "swing": KeyframeTemplates.swing,
    "flutter": KeyframeTemplates.flutter,
    "pulse": KeyframeTemplates.pulse,
}

# =============================================================================
# SYNTHESIZER
# =============================================================================

class AnimationSynthesizer:
    """Generates per-bone keyframe tracks for an archetype"""

    def __init__(self, fps: int = 60, loop: bool = True):
        self.fps = fps
        self.loop = loop

    def synthesize(self, skeleton: Skeleton, archetype: Any, duration: float,
                   name: Optional[str] = None) -> AnimationSequence:
        """
        Build a looping sequence for every bone of `skeleton`

        Args:
            skeleton: validated skeleton
            archetype: Archetype or its string value ('idle', 'win', 'scatter')
            duration: length in milliseconds
        """
        archetype = parse_enum(Archetype, archetype, "archetype")
        _check_duration(duration)

        tracks = []
        for bone in skeleton.iter_bones():
            target = self._bone_target(bone, skeleton, archetype)
            poses = self._bone_poses(bone, target, skeleton, archetype, duration)
            tracks.append(self._build_track(target, poses, duration))

        events = [AnimationEvent("loop_start", 0.0)]
        if archetype == Archetype.WIN:
            events.append(AnimationEvent("celebrate", duration * 0.25))

        sequence = AnimationSequence(
            name=name or f"{skeleton.name}_{archetype.value}",
            duration=float(duration),
            fps=self.fps,
            tracks=tracks,
            loop=self.loop,
            events=events,
            skeleton_id=skeleton.id,
            metadata=SequenceMetadata(
                description=f"{archetype.value} animation for {skeleton.anatomy_type.value} skeleton",
                tags=[archetype.value, skeleton.anatomy_type.value],
            ),
        )
        sequence.validate()

        total = sum(len(t.keyframes) for t in tracks)
        logger.info(f"Synthesized '{sequence.name}' ✓ {len(tracks)} tracks, {total} keyframes")
        return sequence

    def from_layers(self, layers: List[Any], name: str, duration: float,
                    canvas_size: Tuple[float, float] = (2432, 1247),
                    symbol_scale: float = 0.49,
                    source_size: float = 1024) -> AnimationSequence:
        """Sequence for extracted layers placed on the composition canvas"""
        _check_duration(duration)
        if not isinstance(layers, list) or not layers:
            raise InvalidInputError("At least one extracted layer is required")
        records = [r if isinstance(r, LayerRecord) else LayerRecord.from_dict(r, i)
                   for i, r in enumerate(layers)]
        seen = set()
        for record in records:
            if record.layer_id in seen:
                raise InvalidInputError(f"Duplicate layer id '{record.layer_id}'")
            seen.add(record.layer_id)

        center_x, center_y = canvas_size[0] / 2, canvas_size[1] / 2
        symbol_size = source_size * symbol_scale

        tracks = []
        for record in records:
            x, y, w, h = record.bounds
            base = KeyframeProperties(
                x=center_x + ((x + w / 2) / 100 - 0.5) * symbol_size,
                y=center_y + ((y + h / 2) / 100 - 0.5) * symbol_size,
            )
            motion_class = LAYER_MOTION.get(record.layer_type)
            target = MotionTarget(
                layer_id=record.layer_id,
                name=record.name,
                layer_type=record.layer_type,
                base=base,
                constraints=BoneConstraints(),
                tier=record.animation_potential,
                motion_class=motion_class,
                color=LAYER_COLORS[record.layer_type],
            )
            tracks.append(self._build_track(target, self._tier_poses(target, duration), duration))

        sequence = AnimationSequence(
            name=name,
            duration=float(duration),
            fps=self.fps,
            tracks=tracks,
            loop=self.loop,
            events=[AnimationEvent("loop_start", 0.0)],
            metadata=SequenceMetadata(
                description=f"Animation sequence created from {len(records)} extracted layers",
                tags=["extracted-layers"],
            ),
        )
        sequence.validate()
        logger.info(f"Layer sequence '{name}' ✓ {len(tracks)} tracks")
        return sequence

    # -------------------------------------------------------------------------

    def _bone_target(self, bone: Bone, skeleton: Skeleton, archetype: Archetype) -> MotionTarget:
        motion_class = bone_motion_class(bone)
        return MotionTarget(
            layer_id=bone.id,
            name=bone.name,
            layer_type=bone.anatomy_type.value,
            base=KeyframeProperties.from_transform(bone.original_transform),
            constraints=bone.constraints,
            tier=intensity_tier(bone.flexibility, archetype),
            motion_class=motion_class,
            amplitude=ANATOMY_AMPLITUDE[skeleton.anatomy_type],
        )

    def _bone_poses(self, bone: Bone, target: MotionTarget, skeleton: Skeleton,
                    archetype: Archetype, duration: float) -> List[Pose]:
        if bone.anatomy_type.is_wing:
            if archetype == Archetype.IDLE:
                frequency = 8 if skeleton.anatomy_type == AnatomyType.INSECT else 4
                phase = 0.0 if bone.side < 0 else math.pi
                return KeyframeTemplates.wing_flutter(
                    target, duration, bone.flexibility, frequency, phase)
            if archetype == Archetype.WIN:
                return KeyframeTemplates.wing_spread(target, duration, bone.flexibility)
        return self._tier_poses(target, duration)

    def _tier_poses(self, target: MotionTarget, duration: float) -> List[Pose]:
        if target.tier == "high":
            template = TIER_TEMPLATES.get(target.motion_class, KeyframeTemplates.gentle_float)
            return template(target, duration)
        if target.tier == "medium":
            return KeyframeTemplates.gentle_float(target, duration)
        return KeyframeTemplates.breathe(target, duration)

    def _build_track(self, target: MotionTarget, poses: List[Pose],
                     duration: float) -> AnimationTrack:
        rest = target.clamp(target.base)
        keyframes = [AnimationKeyframe(0.0, target.layer_id, rest, EaseType.EASE_OUT)]
        for time_ms, props, easing in poses:
            if 0 < time_ms < duration:
                keyframes.append(AnimationKeyframe(time_ms, target.layer_id, target.clamp(props), easing))
        keyframes.append(AnimationKeyframe(float(duration), target.layer_id, rest, EaseType.EASE_IN))

        return AnimationTrack(
            layer_id=target.layer_id,
            layer_name=target.name,
            layer_type=target.layer_type,
            color=target.color,
            keyframes=keyframes,
        )


def _check_duration(duration: Any) -> None:
    if isinstance(duration, bool) or not isinstance(duration, (int, float)) \
            or not math.isfinite(duration) or duration <= 0:
        raise InvalidInputError(f"Duration must be a positive number of milliseconds, got {duration!r}")
