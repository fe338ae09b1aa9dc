"""Shared fixtures: classifier payloads, skeletons, a counting clock, small images"""

import math

import numpy as np
import pytest
from PIL import Image

from animation_engine import (
    AnatomyType, BoneAnatomy, Complexity, Transform, BoneConstraints, Bone,
    Skeleton, KeyframeProperties, AnimationKeyframe, AnimationTrack,
    AnimationSequence, EaseType
)
from rig_builder import SkeletonBuilder
from timeline_engine import ManualFrameScheduler
from symbol_rigger import SymbolRigger


def element(element_id, element_type, x, y, w, h, confidence=0.9):
    return {
        "id": element_id,
        "type": element_type,
        "name": element_id.replace("_", " ").title(),
        "boundingBox": {"x": x, "y": y, "width": w, "height": h},
        "confidence": confidence,
    }


@pytest.fixture
def wings_analysis():
    """Two wings, nothing else"""
    return {
        "confidence": 0.92,
        "detectedElements": [
            element("wing_left", "wings", 0.05, 0.2, 0.35, 0.4),
            element("wing_right", "wings", 0.6, 0.2, 0.35, 0.4),
        ],
        "themeClassification": {"primary": "winged emblem"},
    }


@pytest.fixture
def insect_analysis():
    return {
        "confidence": 0.88,
        "detectedElements": [
            element("wing_left", "wings", 0.05, 0.2, 0.35, 0.4),
            element("wing_right", "wings", 0.6, 0.2, 0.35, 0.4),
            element("body", "body", 0.4, 0.3, 0.2, 0.5),
            element("head", "head", 0.42, 0.15, 0.16, 0.15),
            element("legs", "limbs", 0.35, 0.5, 0.3, 0.3),
        ],
        "themeClassification": {"primary": "Golden scarab beetle"},
    }


@pytest.fixture
def builder():
    return SkeletonBuilder()


@pytest.fixture
def wing_skeleton(builder, wings_analysis):
    return builder.build(wings_analysis, 1024, 1024)


@pytest.fixture
def insect_skeleton(builder, insect_analysis):
    return builder.build(insect_analysis, 1024, 1024)


@pytest.fixture
def single_wing_skeleton():
    """Insect skeleton holding a root and one wing-root bone of flexibility 0.8"""
    root = Bone(
        id="root", name="Root", parent=None,
        original_transform=Transform(x=50, y=50),
        anatomy_type=BoneAnatomy.BODY_CENTER,
        flexibility=0.1,
        children=["wing-root-left"],
    )
    wing = Bone(
        id="wing-root-left", name="Left Wing Root", parent="root",
        original_transform=Transform(x=30, y=50),
        anatomy_type=BoneAnatomy.WING_ROOT,
        length=20,
        flexibility=0.8,
        constraints=BoneConstraints(rotation_min=-math.pi / 3, rotation_max=math.pi / 3,
                                    scale_min=0.7, scale_max=1.4),
    )
    skeleton = Skeleton(
        id="skeleton_manual",
        name="beetle",
        bones={"root": root, "wing-root-left": wing},
        root_bone="root",
        anatomy_type=AnatomyType.INSECT,
        complexity=Complexity.SIMPLE,
    )
    skeleton.validate()
    skeleton.default_pose = skeleton.snapshot_pose()
    return skeleton


@pytest.fixture
def two_key_sequence():
    """1000ms loop, one track keyed at 0 and 1000"""
    rest = KeyframeProperties(x=10, y=20)
    track = AnimationTrack(
        layer_id="gem",
        layer_name="Gem",
        keyframes=[
            AnimationKeyframe(0.0, "gem", rest, EaseType.EASE_OUT),
            AnimationKeyframe(1000.0, "gem", rest, EaseType.EASE_IN),
        ],
    )
    return AnimationSequence(name="gem_idle", duration=1000, tracks=[track])


@pytest.fixture
def scheduler():
    return ManualFrameScheduler()


@pytest.fixture
def rigger(scheduler):
    return SymbolRigger(scheduler=scheduler)


@pytest.fixture
def rgba_array():
    """128x128 RGBA: opaque red left half, opaque blue right half"""
    pixels = np.zeros((128, 128, 4), dtype=np.uint8)
    pixels[:, :64] = (220, 40, 40, 255)
    pixels[:, 64:] = (40, 40, 220, 255)
    return pixels


@pytest.fixture
def rgba_image(rgba_array):
    image = Image.fromarray(rgba_array)
    yield image
    image.close()
