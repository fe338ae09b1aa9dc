#!/usr/bin/env python3
"""
╔══════════════════════════════════════════════════════════════════════════════╗
║                                                                              ║
║                     SYMBOL RIGGER - SKELETON BUILDER                         ║
║                                                                              ║
║   CLASSIFIED IMAGE REGIONS → ROOTED BONE TREE                               ║
║                                                                              ║
║   Usage:                                                                     ║
║   >>> builder = SkeletonBuilder()                                           ║
║   >>> skeleton = builder.build(analysis, 1024, 1024)                        ║
║   >>> # root + wing chains + body segments + limbs + head                   ║
║                                                                              ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

from __future__ import annotations
import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any, Union
import logging

from animation_engine import (
    AnatomyType, BoneAnatomy, Complexity, AttachmentType,
    Transform, BoneConstraints, BonePhysics, Bone, BoneAttachment,
    IKConstraint, Skeleton, InvalidInputError, SkeletonStructureError,
    validate_bone_tree, new_id
)

logger = logging.getLogger("SymbolRigger.Build")
logger.setLevel(logging.INFO)
if not logger.handlers:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(
        '\033[35m\033[1mBUILD\033[0m: \033[35m%(message)s\033[0m'
    ))
    logger.addHandler(handler)

# =============================================================================
# PHYSICS PROFILES AND CLASSIFICATION KEYWORDS
# =============================================================================

PHYSICS_PROFILES = {
    AnatomyType.INSECT: {"mass": 0.8, "damping": 0.7, "elasticity": 1.3},
    AnatomyType.BIRD: {"mass": 0.6, "damping": 0.5, "elasticity": 1.5},
    AnatomyType.MAGICAL: {"mass": 0.4, "damping": 0.3, "elasticity": 2.0},
    AnatomyType.MECHANICAL: {"mass": 1.2, "damping": 0.9, "elasticity": 0.8},
    AnatomyType.MAMMAL: {"mass": 1.0, "damping": 0.8, "elasticity": 1.0},
    AnatomyType.ABSTRACT: {"mass": 0.7, "damping": 0.6, "elasticity": 1.2},
}

# Wing membranes stay springy whatever the anatomy
WING_ELASTICITY_BOOST = 1.5
WING_DAMPING_FACTOR = 0.8
DEPTH_FLEXIBILITY_STEP = 0.1

ANATOMY_KEYWORDS = [
    # (anatomy, keywords, wings required)
    (AnatomyType.INSECT, ("beetle", "scarab", "insect"), True),
    (AnatomyType.BIRD, ("bird", "phoenix", "eagle"), True),
    (AnatomyType.MAGICAL, ("dragon", "magical"), True),
    (AnatomyType.MECHANICAL, ("mechanical", "robot"), False),
    (AnatomyType.MAMMAL, ("mammal", "animal"), False),
]

ELEMENT_TYPES = ("wings", "body", "limbs", "head")

# =============================================================================
# CLASSIFIER INPUT CONTRACT
# =============================================================================

@dataclass(frozen=True)
class BoundingBox:
    """Normalized region (fractions of image width/height)"""
    x: float
    y: float
    width: float
    height: float

    def __post_init__(self):
        for name in ("x", "y", "width", "height"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise InvalidInputError(f"Bounding box '{name}' must be a number, got {value!r}")
            if not math.isfinite(value) or not 0.0 <= value <= 1.0:
                raise InvalidInputError(f"Bounding box '{name}' must be finite and in [0, 1], got {value}")

    @property
    def center(self):
        return (self.x + self.width * 0.5, self.y + self.height * 0.5)

    @classmethod
    def from_dict(cls, data: Any) -> 'BoundingBox':
        if not isinstance(data, dict):
            raise InvalidInputError(f"boundingBox must be an object, got {type(data).__name__}")
        try:
            return cls(data["x"], data["y"], data["width"], data["height"])
        except KeyError as e:
            raise InvalidInputError(f"boundingBox is missing '{e.args[0]}'") from None


@dataclass(frozen=True)
class DetectedElement:
    """Base of the closed element union; use one of the subclasses"""
    id: str
    name: str
    bounding_box: BoundingBox
    confidence: float = 1.0

    element_type = ""

    @property
    def side(self) -> int:
        """-1 for left, +1 for right; untagged ids fall back to which half the box sits in"""
        tag = self.id.lower()
        if "left" in tag:
            return -1
        if "right" in tag:
            return 1
        return -1 if self.bounding_box.center[0] < 0.5 else 1


@dataclass(frozen=True)
class WingsElement(DetectedElement):
    element_type = "wings"


@dataclass(frozen=True)
class BodyElement(DetectedElement):
    element_type = "body"


@dataclass(frozen=True)
class LimbsElement(DetectedElement):
    element_type = "limbs"


@dataclass(frozen=True)
class HeadElement(DetectedElement):
    element_type = "head"


ELEMENT_CLASSES = {
    "wings": WingsElement,
    "body": BodyElement,
    "limbs": LimbsElement,
    "head": HeadElement,
}


def parse_element(data: Any, index: int = 0) -> DetectedElement:
    """Validate one `detectedElements` record into its typed element"""
    if not isinstance(data, dict):
        raise InvalidInputError(f"detectedElements[{index}] must be an object")
    element_type = data.get("type")
    element_cls = ELEMENT_CLASSES.get(element_type)
    if element_cls is None:
        raise InvalidInputError(
            f"detectedElements[{index}] has unknown type {element_type!r}; "
            f"expected one of {', '.join(ELEMENT_TYPES)}")
    element_id = data.get("id")
    if not isinstance(element_id, str) or not element_id:
        raise InvalidInputError(f"detectedElements[{index}] needs a non-empty string id")
    if "boundingBox" not in data:
        raise InvalidInputError(f"detectedElements[{index}] ({element_id}) has no boundingBox")

    confidence = data.get("confidence", 1.0)
    if not isinstance(confidence, (int, float)) or not math.isfinite(confidence) \
            or not 0.0 <= confidence <= 1.0:
        raise InvalidInputError(f"Element '{element_id}' confidence must be in [0, 1], got {confidence!r}")

    return element_cls(
        id=element_id,
        name=str(data.get("name") or element_id),
        bounding_box=BoundingBox.from_dict(data["boundingBox"]),
        confidence=float(confidence),
    )


@dataclass(frozen=True)
class ClassifierResult:
    """Validated classifier output"""
    confidence: float
    elements: List[DetectedElement] = field(default_factory=list)
    theme: str = ""

    @classmethod
    def from_dict(cls, data: Any) -> 'ClassifierResult':
        if not isinstance(data, dict):
            raise InvalidInputError("Classifier result must be an object")
        confidence = data.get("confidence", 1.0)
        if not isinstance(confidence, (int, float)) or not math.isfinite(confidence) \
                or not 0.0 <= confidence <= 1.0:
            raise InvalidInputError(f"Classifier confidence must be in [0, 1], got {confidence!r}")

        raw_elements = data.get("detectedElements")
        if not isinstance(raw_elements, list):
            raise InvalidInputError("Classifier result is missing the detectedElements list")

        theme = data.get("themeClassification") or {}
        primary = theme.get("primary", "") if isinstance(theme, dict) else str(theme)

        return cls(
            confidence=float(confidence),
            elements=[parse_element(e, i) for i, e in enumerate(raw_elements)],
            theme=str(primary or ""),
        )

    def of_type(self, element_type: str) -> List[DetectedElement]:
        return [e for e in self.elements if e.element_type == element_type]

    def has(self, element_type: str) -> bool:
        return any(e.element_type == element_type for e in self.elements)


def classify_anatomy(result: ClassifierResult) -> AnatomyType:
    """First matching keyword rule wins; abstract otherwise"""
    theme = result.theme.lower()
    has_wings = result.has("wings")
    for anatomy, keywords, needs_wings in ANATOMY_KEYWORDS:
        if needs_wings and not has_wings:
            continue
        if any(word in theme for word in keywords):
            return anatomy
    return AnatomyType.ABSTRACT


def classify_complexity(result: ClassifierResult) -> Complexity:
    count = len(result.elements)
    has_limbs = result.has("limbs")
    if count <= 3 and not has_limbs:
        return Complexity.SIMPLE
    if count <= 6 or (result.has("wings") and not has_limbs):
        return Complexity.MEDIUM
    return Complexity.COMPLEX

# =============================================================================
# SKELETON BUILDER
# =============================================================================

class SkeletonBuilder:
    """
    Converts classifier output into a rooted bone tree.

    Bones are assembled into a local map and only wrapped into a Skeleton
    once the whole tree validates, so a failure never leaves a partial rig.
    """

    def build(self, analysis: Union[dict, ClassifierResult], width: int, height: int,
              name: Optional[str] = None) -> Skeleton:
        """
        Build a skeleton from one classifier result

        Args:
            analysis: classifier payload (dict) or an already parsed ClassifierResult
            width: source image width in pixels
            height: source image height in pixels
            name: skeleton display name

        Returns:
            Validated Skeleton with attachments and IK descriptors
        """
        for label, value in (("width", width), ("height", height)):
            if isinstance(value, bool) or not isinstance(value, (int, float)) \
                    or not math.isfinite(value) or value <= 0:
                raise InvalidInputError(f"Image {label} must be a positive number, got {value!r}")

        result = analysis if isinstance(analysis, ClassifierResult) else ClassifierResult.from_dict(analysis)
        anatomy = classify_anatomy(result)
        complexity = classify_complexity(result)

        logger.info(f"Building skeleton: {anatomy.value} / {complexity.value} "
                    f"({len(result.elements)} elements)")

        bones: Dict[str, Bone] = {}
        self._add_bone(bones, self._create_root(width, height))

        # One rig part per wing side, body, head and limb set
        built = set()
        for element in result.elements:
            if isinstance(element, WingsElement):
                part = f"{'left' if element.side < 0 else 'right'} wing"
            else:
                part = element.element_type
            if part in built:
                logger.warning(f"Element '{element.id}' repeats the {part}; skipped")
                continue
            built.add(part)

            if isinstance(element, WingsElement):
                self._add_wing_chain(bones, element, width, height)
            elif isinstance(element, BodyElement):
                self._add_body_segments(bones, element, anatomy, width, height)
            elif isinstance(element, LimbsElement):
                self._add_limbs(bones, element, anatomy, width, height)
            elif isinstance(element, HeadElement):
                self._add_head(bones, element, width, height)

        root_id = validate_bone_tree(bones)
        self._apply_physics_profile(bones, anatomy)

        skeleton = Skeleton(
            id=new_id("skeleton"),
            name=name or (result.theme or "symbol"),
            bones=bones,
            root_bone=root_id,
            anatomy_type=anatomy,
            complexity=complexity,
            confidence=result.confidence,
            width=int(width),
            height=int(height),
        )
        skeleton.ik_constraints = IKConstraintGenerator().generate(skeleton)
        skeleton.attachments = AttachmentGenerator().generate(skeleton)
        skeleton.validate()
        skeleton.default_pose = skeleton.snapshot_pose()

        logger.info(f"Skeleton ready ✓ {len(bones)} bones, "
                    f"{len(skeleton.attachments)} attachments, "
                    f"{len(skeleton.ik_constraints)} IK chains")
        return skeleton

    # -------------------------------------------------------------------------
    # Bone factories
    # -------------------------------------------------------------------------

    def _add_bone(self, bones: Dict[str, Bone], bone: Bone) -> None:
        if bone.id in bones:
            raise SkeletonStructureError(f"Duplicate bone id '{bone.id}'")
        if bone.parent is not None:
            parent = bones.get(bone.parent)
            if parent is None:
                raise SkeletonStructureError(
                    f"Bone '{bone.id}' references missing parent '{bone.parent}'")
            parent.children.append(bone.id)
        bones[bone.id] = bone
        logger.debug(f"  + {bone.id} ({bone.anatomy_type.value}) <- {bone.parent}")

    def _create_root(self, width: float, height: float) -> Bone:
        return Bone(
            id="root",
            name="Root",
            parent=None,
            original_transform=Transform(x=width * 0.5, y=height * 0.5),
            anatomy_type=BoneAnatomy.BODY_CENTER,
            length=0.0,
            thickness=5,
            flexibility=0.1,
            importance=1.0,
            constraints=BoneConstraints(
                rotation_min=-math.pi / 6, rotation_max=math.pi / 6,
                scale_min=0.8, scale_max=1.2, allow_translation=False),
            physics=BonePhysics(mass=1.0, damping=0.8, elasticity=0.2, follow_parent=0.0),
        )

    def _add_wing_chain(self, bones: Dict[str, Bone], element: WingsElement,
                        width: float, height: float) -> None:
        """Root → mid → tip, limits mirrored by side"""
        side = element.side
        side_name = "left" if side < 0 else "right"
        box = element.bounding_box
        cx = box.center[0] * width
        cy = box.center[1] * height
        span = box.width * width

        chain = [
            # (anatomy, suffix, x, length, thickness, flex, importance, limit,
            #  scale range, mass, damping, elasticity, follow)
            (BoneAnatomy.WING_ROOT, "root", cx * 0.7, span * 0.3, 8, 0.8, 0.9,
             math.pi / 3, (0.7, 1.4), 0.3, 0.6, 0.4, 0.8),
            (BoneAnatomy.WING_MID, "mid", cx, span * 0.4, 6, 0.9, 0.8,
             math.pi / 4, (0.8, 1.3), 0.2, 0.5, 0.6, 0.7),
            (BoneAnatomy.WING_TIP, "tip", cx + span * 0.3 * side, span * 0.3, 4, 1.0, 0.7,
             math.pi / 2, (0.6, 1.5), 0.1, 0.4, 0.8, 0.6),
        ]

        parent = "root"
        for (anatomy, suffix, x, length, thickness, flex, importance, limit,
             scale_range, mass, damping, elasticity, follow) in chain:
            bone_id = f"wing-{suffix}-{side_name}"
            self._add_bone(bones, Bone(
                id=bone_id,
                name=f"{side_name} Wing {suffix.capitalize()}",
                parent=parent,
                original_transform=Transform(x=x, y=cy),
                anatomy_type=anatomy,
                length=length,
                thickness=thickness,
                flexibility=flex,
                importance=importance,
                constraints=BoneConstraints.mirrored(limit, side, *scale_range),
                physics=BonePhysics(mass=mass, damping=damping,
                                    elasticity=elasticity, follow_parent=follow),
                confidence=element.confidence,
            ))
            parent = bone_id

    def _add_body_segments(self, bones: Dict[str, Bone], element: BodyElement,
                           anatomy: AnatomyType, width: float, height: float) -> None:
        box = element.bounding_box
        count = 3 if anatomy == AnatomyType.INSECT else 2
        seg_height = box.height / count
        x = box.center[0] * width

        parent = "root"
        for i in range(count):
            bone_id = f"body-segment-{i}"
            self._add_bone(bones, Bone(
                id=bone_id,
                name=f"Body Segment {i + 1}",
                parent=parent,
                original_transform=Transform(x=x, y=(box.y + seg_height * (i + 0.5)) * height),
                anatomy_type=BoneAnatomy.BODY_SEGMENT,
                length=seg_height * height,
                thickness=6,
                # Tail segments bend more
                flexibility=0.3 + i * 0.2,
                importance=0.6,
                constraints=BoneConstraints(
                    rotation_min=-math.pi / 8, rotation_max=math.pi / 8,
                    scale_min=0.9, scale_max=1.1, allow_translation=False),
                physics=BonePhysics(mass=0.5, damping=0.7, elasticity=0.3, follow_parent=0.9),
                confidence=element.confidence,
            ))
            parent = bone_id

    def _add_limbs(self, bones: Dict[str, Bone], element: LimbsElement,
                   anatomy: AnatomyType, width: float, height: float) -> None:
        count = 6 if anatomy == AnatomyType.INSECT else 4
        for i in range(count):
            side = -1 if i % 2 == 0 else 1
            self._add_bone(bones, Bone(
                id=f"limb-{i}",
                name=f"{'Left' if side < 0 else 'Right'} Limb {i // 2 + 1}",
                parent="root",
                original_transform=Transform(
                    x=width * 0.5 + width * 0.2 * side,
                    y=height * 0.6 + i * 20),
                anatomy_type=BoneAnatomy.LIMB,
                length=30,
                thickness=3,
                flexibility=0.8,
                importance=0.4,
                constraints=BoneConstraints(
                    rotation_min=-math.pi, rotation_max=math.pi,
                    scale_min=0.8, scale_max=1.2, allow_translation=True),
                physics=BonePhysics(mass=0.1, damping=0.3, elasticity=0.7, follow_parent=0.5),
                confidence=element.confidence,
            ))

    def _add_head(self, bones: Dict[str, Bone], element: HeadElement,
                  width: float, height: float) -> None:
        box = element.bounding_box
        cx, cy = box.center
        self._add_bone(bones, Bone(
            id="head",
            name=element.name,
            parent="root",
            original_transform=Transform(x=cx * width, y=cy * height),
            anatomy_type=BoneAnatomy.BODY_CENTER,
            length=box.width * width,
            thickness=8,
            flexibility=0.4,
            importance=0.8,
            constraints=BoneConstraints(
                rotation_min=-math.pi / 6, rotation_max=math.pi / 6,
                scale_min=0.9, scale_max=1.1, allow_translation=False),
            physics=BonePhysics(mass=0.3, damping=0.8, elasticity=0.2, follow_parent=0.9),
            confidence=element.confidence,
        ))

    # -------------------------------------------------------------------------
    # Physics post-pass
    # -------------------------------------------------------------------------

    def _apply_physics_profile(self, bones: Dict[str, Bone], anatomy: AnatomyType) -> None:
        """Scale physics by anatomy profile and loosen bones with tree depth"""
        profile = PHYSICS_PROFILES[anatomy]
        for bone in bones.values():
            physics = bone.physics
            physics.mass *= profile["mass"]
            physics.damping *= profile["damping"]
            physics.elasticity *= profile["elasticity"]
            if bone.anatomy_type.is_wing:
                physics.elasticity *= WING_ELASTICITY_BOOST
                physics.damping *= WING_DAMPING_FACTOR

            depth = _depth(bones, bone.id)
            bone.flexibility = min(1.0, bone.flexibility + depth * DEPTH_FLEXIBILITY_STEP)


def _depth(bones: Dict[str, Bone], bone_id: str) -> int:
    depth = 0
    visited = {bone_id}
    current = bones[bone_id].parent
    while current is not None:
        if current in visited:
            raise SkeletonStructureError(f"Parent cycle detected at bone '{current}'")
        visited.add(current)
        depth += 1
        current = bones[current].parent
    return depth

# =============================================================================
# IK AND ATTACHMENT GENERATORS
# =============================================================================

class IKConstraintGenerator:
    """Attaches two-bone IK descriptors to each wing chain"""

    def generate(self, skeleton: Skeleton) -> Dict[str, IKConstraint]:
        constraints = {}
        for side_name, bend in (("left", 1), ("right", -1)):
            chain = skeleton.wing_chain(side_name)
            if len(chain) < 2:
                continue
            ik = IKConstraint(
                id=f"{side_name}-wing-ik",
                name=f"{side_name.capitalize()} Wing IK",
                target=f"{side_name}-wing-target",
                bones=chain[:2],
                bend_direction=bend,
                mix=0.8,
                natural_motion=True,
                anatomically_correct=True,
            )
            tip = skeleton.bones.get(chain[-1])
            if tip is not None:
                ik.target_position = (tip.original_transform.x, tip.original_transform.y)
            constraints[ik.id] = ik
            logger.debug(f"  IK {ik.id}: {' -> '.join(ik.bones)}")
        return constraints


WING_MEMBRANE_SEGMENTS = 8


def membrane_vertices(length: float, segments: int = WING_MEMBRANE_SEGMENTS):
    """Elliptical vertex fan along a bone; end points are shared by both edges"""
    vertices = []
    for i in range(segments + 1):
        t = i / segments
        bulge = math.sin(math.pi * t) * length * 0.3
        vertices.append((length * t, bulge))
        if 0 < i < segments:
            vertices.append((length * t, -bulge))
    return vertices


class AttachmentGenerator:
    """Maps wing and body bones to renderable regions"""

    def generate(self, skeleton: Skeleton) -> Dict[str, BoneAttachment]:
        attachments = {}
        for bone in skeleton.iter_bones():
            if bone.anatomy_type.is_wing:
                attachment = BoneAttachment(
                    id=f"{bone.id}-attachment",
                    bone_id=bone.id,
                    texture_id="wing-texture",
                    attachment_type=AttachmentType.WING_MEMBRANE,
                    render_order=1,
                    deformable=True,
                    deform_vertices=membrane_vertices(bone.length),
                )
            elif bone.anatomy_type.is_body:
                attachment = BoneAttachment(
                    id=f"{bone.id}-attachment",
                    bone_id=bone.id,
                    texture_id="body-texture",
                    attachment_type=AttachmentType.BODY_SHELL,
                    render_order=0,
                )
            else:
                continue
            attachments[attachment.id] = attachment
        return attachments
