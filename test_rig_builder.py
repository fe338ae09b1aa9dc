"""Skeleton builder, classifier contract, IK and attachment generators"""

import logging
import math

import pytest

from animation_engine import (
    AnatomyType, BoneAnatomy, Complexity, AttachmentType, Transform, Bone, BoneConstraints,
    InvalidInputError, SkeletonStructureError, NotFoundError, validate_bone_tree
)
from rig_builder import (
    BoundingBox, ClassifierResult, WingsElement, BodyElement, HeadElement,
    LimbsElement, classify_anatomy, classify_complexity, membrane_vertices
)
from conftest import element


def analysis_with(*elements, theme=""):
    return {
        "confidence": 0.9,
        "detectedElements": list(elements),
        "themeClassification": {"primary": theme},
    }

# =============================================================================
# CLASSIFIER CONTRACT
# =============================================================================

def test_elements_parse_into_tagged_union(insect_analysis):
    result = ClassifierResult.from_dict(insect_analysis)
    kinds = {type(e) for e in result.elements}
    assert kinds == {WingsElement, BodyElement, HeadElement, LimbsElement}
    assert result.theme == "Golden scarab beetle"
    assert [e.side for e in result.of_type("wings")] == [-1, 1]


@pytest.mark.parametrize("box", [
    {"x": 1.5, "y": 0.1, "width": 0.2, "height": 0.2},
    {"x": 0.1, "y": -0.1, "width": 0.2, "height": 0.2},
    {"x": float("nan"), "y": 0.1, "width": 0.2, "height": 0.2},
    {"x": 0.1, "y": 0.1, "width": float("inf"), "height": 0.2},
    {"x": 0.1, "y": 0.1, "width": "wide", "height": 0.2},
])
def test_invalid_bounding_box_rejected(builder, box):
    data = analysis_with({"id": "wing_left", "type": "wings", "boundingBox": box})
    with pytest.raises(InvalidInputError):
        builder.build(data, 512, 512)


def test_missing_bounding_box_key():
    with pytest.raises(InvalidInputError, match="height"):
        BoundingBox.from_dict({"x": 0.1, "y": 0.1, "width": 0.2})


def test_unknown_element_type_rejected(builder):
    data = analysis_with(element("tail", "tail", 0.1, 0.1, 0.2, 0.2))
    with pytest.raises(InvalidInputError, match="unknown type"):
        builder.build(data, 512, 512)


def test_missing_detected_elements(builder):
    with pytest.raises(InvalidInputError):
        builder.build({"confidence": 0.5}, 512, 512)


@pytest.mark.parametrize("width", [0, -10, float("nan"), True])
def test_invalid_image_size(builder, wings_analysis, width):
    with pytest.raises(InvalidInputError):
        builder.build(wings_analysis, width, 512)


@pytest.mark.parametrize("theme, with_wings, expected", [
    ("Golden scarab beetle", True, AnatomyType.INSECT),
    ("beetle", False, AnatomyType.ABSTRACT),
    ("Flaming phoenix", True, AnatomyType.BIRD),
    ("ancient dragon", True, AnatomyType.MAGICAL),
    ("steam robot", False, AnatomyType.MECHANICAL),
    ("wild animal", False, AnatomyType.MAMMAL),
    ("lucky seven", True, AnatomyType.ABSTRACT),
])
def test_anatomy_classification(theme, with_wings, expected):
    elements = [element("body", "body", 0.4, 0.3, 0.2, 0.4)]
    if with_wings:
        elements.append(element("wing_left", "wings", 0.05, 0.2, 0.3, 0.4))
    result = ClassifierResult.from_dict(analysis_with(*elements, theme=theme))
    assert classify_anatomy(result) == expected


def test_complexity_classification(wings_analysis, insect_analysis):
    assert classify_complexity(ClassifierResult.from_dict(wings_analysis)) == Complexity.SIMPLE
    assert classify_complexity(ClassifierResult.from_dict(insect_analysis)) == Complexity.MEDIUM

    many = [element(f"limb_{i}", "limbs", 0.1, 0.1, 0.1, 0.1) for i in range(7)]
    assert classify_complexity(ClassifierResult.from_dict(analysis_with(*many))) == Complexity.COMPLEX

# =============================================================================
# SKELETON STRUCTURE
# =============================================================================

def test_two_wings_make_seven_bones(wing_skeleton):
    assert len(wing_skeleton.bones) == 7
    root = wing_skeleton.bones[wing_skeleton.root_bone]
    assert root.parent is None
    assert len(root.children) == 2
    assert set(root.children) == {"wing-root-left", "wing-root-right"}


def test_wing_chain_order(wing_skeleton):
    assert wing_skeleton.wing_chain("left") == ["wing-root-left", "wing-mid-left", "wing-tip-left"]
    tip = wing_skeleton.bones["wing-tip-left"]
    assert tip.parent == "wing-mid-left"
    assert wing_skeleton.bone_depth("wing-tip-left") == 3


def test_insect_bone_counts(insect_skeleton):
    bones = insect_skeleton.bones.values()
    assert insect_skeleton.anatomy_type == AnatomyType.INSECT
    assert sum(b.anatomy_type == BoneAnatomy.BODY_SEGMENT for b in bones) == 3
    assert sum(b.anatomy_type == BoneAnatomy.LIMB for b in bones) == 6
    assert "head" in insect_skeleton.bones
    assert len(insect_skeleton.bones) == 1 + 6 + 3 + 6 + 1


def test_limbs_alternate_sides(insect_skeleton):
    center = insect_skeleton.bones["root"].original_transform.x
    for i in range(6):
        limb = insect_skeleton.bones[f"limb-{i}"]
        assert limb.parent == "root"
        if i % 2 == 0:
            assert limb.original_transform.x < center
        else:
            assert limb.original_transform.x > center


def test_every_bone_walks_to_root(insect_skeleton):
    for bone_id in insect_skeleton.bones:
        path = insect_skeleton.path_to_root(bone_id)
        assert path[-1] == insect_skeleton.root_bone
        assert len(path) == len(set(path))


def test_iter_bones_visits_parents_first(insect_skeleton):
    seen = set()
    for bone in insect_skeleton.iter_bones():
        assert bone.parent is None or bone.parent in seen
        seen.add(bone.id)
    assert seen == set(insect_skeleton.bones)


def test_duplicate_bone_id_is_fatal(builder):
    def bone(bone_id, parent):
        return Bone(id=bone_id, name=bone_id, parent=parent,
                    original_transform=Transform(), anatomy_type=BoneAnatomy.JOINT)

    bones = {}
    builder._add_bone(bones, bone("root", None))
    builder._add_bone(bones, bone("joint", "root"))
    with pytest.raises(SkeletonStructureError, match="Duplicate bone id"):
        builder._add_bone(bones, bone("joint", "root"))
    assert bones["root"].children == ["joint"]


def test_second_wing_on_one_side_is_skipped(builder, caplog):
    data = analysis_with(
        element("wing_left", "wings", 0.05, 0.2, 0.3, 0.4),
        element("left_wing_extra", "wings", 0.1, 0.3, 0.3, 0.4),
    )
    with caplog.at_level(logging.WARNING, logger="SymbolRigger.Build"):
        skeleton = builder.build(data, 512, 512)
    assert sorted(skeleton.bones) == ["root", "wing-mid-left", "wing-root-left", "wing-tip-left"]
    assert any("left_wing_extra" in r.getMessage() for r in caplog.records)


def test_untagged_wings_take_side_from_position(builder):
    data = analysis_with(
        element("wing_a", "wings", 0.05, 0.2, 0.35, 0.4),
        element("wing_b", "wings", 0.6, 0.2, 0.35, 0.4),
    )
    skeleton = builder.build(data, 512, 512)
    assert {"wing-root-left", "wing-root-right"} <= set(skeleton.bones)
    assert set(skeleton.ik_constraints) == {"left-wing-ik", "right-wing-ik"}


def test_repeated_body_head_and_limbs_are_skipped(builder, caplog):
    data = analysis_with(
        element("body", "body", 0.4, 0.3, 0.2, 0.5),
        element("torso", "body", 0.4, 0.35, 0.2, 0.4),
        element("head", "head", 0.42, 0.1, 0.16, 0.15),
        element("face", "head", 0.42, 0.12, 0.16, 0.15),
        element("front_legs", "limbs", 0.35, 0.5, 0.3, 0.2),
        element("hind_legs", "limbs", 0.35, 0.7, 0.3, 0.2),
        theme="mammal",
    )
    with caplog.at_level(logging.WARNING, logger="SymbolRigger.Build"):
        skeleton = builder.build(data, 512, 512)

    assert skeleton.anatomy_type == AnatomyType.MAMMAL
    assert sum(1 for b in skeleton.bones if b.startswith("limb-")) == 4
    assert sum(1 for b in skeleton.bones if b.startswith("body-segment-")) == 2
    assert skeleton.bones["head"].name == "Head"
    skipped = [r.getMessage() for r in caplog.records if "skipped" in r.getMessage()]
    assert len(skipped) == 3


def test_parent_cycle_detected():
    def bone(bone_id, parent):
        return Bone(id=bone_id, name=bone_id, parent=parent,
                    original_transform=Transform(), anatomy_type=BoneAnatomy.JOINT)

    bones = {"root": bone("root", None), "a": bone("a", "b"), "b": bone("b", "a")}
    with pytest.raises(SkeletonStructureError, match="cycle"):
        validate_bone_tree(bones)


def test_missing_parent_and_two_roots():
    def bone(bone_id, parent):
        return Bone(id=bone_id, name=bone_id, parent=parent,
                    original_transform=Transform(), anatomy_type=BoneAnatomy.JOINT)

    with pytest.raises(SkeletonStructureError, match="missing parent"):
        validate_bone_tree({"root": bone("root", None), "a": bone("a", "ghost")})
    with pytest.raises(SkeletonStructureError, match="exactly one root"):
        validate_bone_tree({"root": bone("root", None), "other": bone("other", None)})


def test_get_bone_unknown(wing_skeleton):
    with pytest.raises(NotFoundError):
        wing_skeleton.get_bone("tail")
    with pytest.raises(KeyError):
        wing_skeleton.get_bone("tail")

# =============================================================================
# CONSTRAINTS AND PHYSICS
# =============================================================================

def test_root_is_locked_in_place(wing_skeleton):
    root = wing_skeleton.bones["root"]
    assert root.original_transform.x == 512
    assert root.original_transform.y == 512
    assert root.constraints.allow_translation is False
    assert root.physics.mass == pytest.approx(1.0 * 0.7)  # abstract profile


def test_rotation_limits_are_ordered(insect_skeleton):
    for bone in insect_skeleton.bones.values():
        assert bone.constraints.rotation_min <= bone.constraints.rotation_max
        assert bone.constraints.scale_min <= bone.constraints.scale_max


def test_mirrored_limits(insect_skeleton):
    # Equal reach both ways gives left and right wings the same range
    left = insect_skeleton.bones["wing-root-left"].constraints
    right = insect_skeleton.bones["wing-root-right"].constraints
    assert (left.rotation_min, left.rotation_max) == (right.rotation_min, right.rotation_max)

    left = BoneConstraints.mirrored(1.0, -1, 0.5, 1.5, back_limit=0.5)
    right = BoneConstraints.mirrored(1.0, 1, 0.5, 1.5, back_limit=0.5)
    assert (left.rotation_min, left.rotation_max) == (-1.0, 0.5)
    assert (right.rotation_min, right.rotation_max) == (-0.5, 1.0)
    assert left.clamp_rotation(-2.0) == -1.0
    assert right.clamp_rotation(-2.0) == -0.5


def test_wing_physics_boosted(insect_skeleton):
    wing_root = insect_skeleton.bones["wing-root-left"]
    # Base 0.3 / 0.6 / 0.4 scaled by the insect profile, then the wing boost
    assert wing_root.physics.mass == pytest.approx(0.3 * 0.8)
    assert wing_root.physics.damping == pytest.approx(0.6 * 0.7 * 0.8)
    assert wing_root.physics.elasticity == pytest.approx(0.4 * 1.3 * 1.5)

    masses = [insect_skeleton.bones[b].physics.mass for b in insect_skeleton.wing_chain("left")]
    elasticity = [insect_skeleton.bones[b].physics.elasticity for b in insect_skeleton.wing_chain("left")]
    assert masses == sorted(masses, reverse=True)
    assert elasticity == sorted(elasticity)


def test_flexibility_grows_with_depth(insect_skeleton):
    segments = [insect_skeleton.bones[f"body-segment-{i}"].flexibility for i in range(3)]
    assert segments == pytest.approx([0.4, 0.7, 1.0])
    assert all(0.0 <= b.flexibility <= 1.0 for b in insect_skeleton.bones.values())


def test_default_pose_snapshot(wing_skeleton):
    bone = wing_skeleton.bones["wing-mid-left"]
    bone.transform = Transform(x=1, y=2, rotation=0.5)
    assert wing_skeleton.default_pose["wing-mid-left"].transform == bone.original_transform

    wing_skeleton.reset_pose()
    assert bone.transform == bone.original_transform

# =============================================================================
# IK AND ATTACHMENTS
# =============================================================================

def test_ik_chains_per_wing(insect_skeleton):
    left = insect_skeleton.ik_constraints["left-wing-ik"]
    right = insect_skeleton.ik_constraints["right-wing-ik"]
    assert left.bones == ["wing-root-left", "wing-mid-left"]
    assert left.target == "left-wing-target"
    assert left.bend_direction == 1
    assert right.bend_direction == -1
    assert left.mix == pytest.approx(0.8)
    tip = insect_skeleton.bones["wing-tip-left"].original_transform
    assert left.target_position == (tip.x, tip.y)


def test_no_ik_without_wings(builder):
    data = analysis_with(element("body", "body", 0.4, 0.3, 0.2, 0.4))
    skeleton = builder.build(data, 256, 256)
    assert skeleton.ik_constraints == {}


def test_attachments(insect_skeleton):
    by_bone = {a.bone_id: a for a in insect_skeleton.attachments.values()}
    wing = by_bone["wing-mid-right"]
    assert wing.attachment_type == AttachmentType.WING_MEMBRANE
    assert wing.deformable
    assert len(wing.deform_vertices) == 16
    assert wing.render_order == 1

    body = by_bone["body-segment-1"]
    assert body.attachment_type == AttachmentType.BODY_SHELL
    assert body.render_order == 0
    assert not body.deformable

    assert "limb-0" not in by_bone
    assert "root" in by_bone and "head" in by_bone


def test_membrane_vertices_shape():
    vertices = membrane_vertices(100)
    assert vertices[0] == pytest.approx((0.0, 0.0))
    assert vertices[-1][0] == pytest.approx(100.0)
    assert vertices[-1][1] == pytest.approx(0.0, abs=1e-9)
    # Widest point in the middle of the bone
    assert max(v[1] for v in vertices) == pytest.approx(30.0)
    assert min(v[1] for v in vertices) == pytest.approx(-30.0)


def test_skeleton_to_dict(wing_skeleton):
    data = wing_skeleton.to_dict()
    assert data["rootBone"] == "root"
    assert data["anatomyType"] == "abstract"
    assert [b["id"] for b in data["bones"]][0] == "root"
    assert data["bones"][1]["constraints"]["rotationMin"] <= data["bones"][1]["constraints"]["rotationMax"]
    assert math.isfinite(data["bones"][1]["physics"]["mass"])
