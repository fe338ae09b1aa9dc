"""Keyframe synthesis for archetypes and extracted layers"""

import math

import pytest

from animation_engine import Archetype, EaseType, InvalidInputError
from animation_templates import (
    AnimationSynthesizer, intensity_tier, get_animation_presets, bone_motion_class, LAYER_COLORS
)


def track_signature(sequence):
    return [
        [(kf.time, kf.properties, kf.easing) for kf in track.keyframes]
        for track in sequence.tracks
    ]


@pytest.fixture
def synthesizer():
    return AnimationSynthesizer()

# =============================================================================
# ARCHETYPES
# =============================================================================

def test_single_wing_idle_flutter(synthesizer, single_wing_skeleton):
    sequence = synthesizer.synthesize(single_wing_skeleton, "idle", 2000)
    track = sequence.get_track("wing-root-left")

    assert len(track.keyframes) >= 3
    assert track.keyframes[0].time == 0
    assert track.keyframes[-1].time == 2000
    assert track.keyframes[0].properties.rotation == track.keyframes[-1].properties.rotation
    # Something actually moves in between
    assert any(kf.properties.rotation != 0 for kf in track.keyframes[1:-1])


def test_every_track_starts_and_ends_on_rest(synthesizer, insect_skeleton):
    for archetype in Archetype:
        sequence = synthesizer.synthesize(insect_skeleton, archetype, 1500)
        sequence.validate()
        assert len(sequence.tracks) == len(insect_skeleton.bones)
        for track in sequence.tracks:
            first, last = track.keyframes[0], track.keyframes[-1]
            assert (first.time, last.time) == (0, 1500)
            assert first.properties == last.properties
            assert all(0 <= kf.time <= 1500 for kf in track.keyframes)
            times = [kf.time for kf in track.keyframes]
            assert times == sorted(times)


def test_keyframes_respect_bone_constraints(synthesizer, insect_skeleton):
    for archetype in Archetype:
        sequence = synthesizer.synthesize(insect_skeleton, archetype, 2000)
        for track in sequence.tracks:
            c = insect_skeleton.bones[track.layer_id].constraints
            for kf in track.keyframes:
                assert c.rotation_min <= kf.properties.rotation <= c.rotation_max
                assert c.scale_min <= kf.properties.scale_x <= c.scale_max
                assert c.scale_min <= kf.properties.scale_y <= c.scale_max


def test_root_never_translates(synthesizer, insect_skeleton):
    root = insect_skeleton.bones["root"].original_transform
    sequence = synthesizer.synthesize(insect_skeleton, "scatter", 1000)
    for kf in sequence.get_track("root").keyframes:
        assert (kf.properties.x, kf.properties.y) == (root.x, root.y)


def test_wings_counter_phase(synthesizer, insect_skeleton):
    sequence = synthesizer.synthesize(insect_skeleton, Archetype.IDLE, 1000)
    left = sequence.get_track("wing-mid-left").keyframes
    right = sequence.get_track("wing-mid-right").keyframes
    assert len(left) == len(right)
    for a, b in zip(left[1:-1], right[1:-1]):
        assert a.time == b.time
        assert a.properties.rotation == pytest.approx(-b.properties.rotation, abs=1e-9)


def test_insect_wings_beat_faster(synthesizer, insect_skeleton, wing_skeleton):
    def sign_changes(sequence):
        values = [kf.properties.rotation for kf in sequence.get_track("wing-root-left").keyframes[1:-1]]
        return sum(1 for a, b in zip(values, values[1:]) if a * b < 0)

    insect = synthesizer.synthesize(insect_skeleton, "idle", 2000)
    abstract = synthesizer.synthesize(wing_skeleton, "idle", 2000)
    assert sign_changes(insect) > sign_changes(abstract)


def test_win_spreads_wings(synthesizer, insect_skeleton):
    sequence = synthesizer.synthesize(insect_skeleton, "win", 2000)
    track = sequence.get_track("wing-root-left")
    assert len(track.keyframes) == 3
    spread = track.keyframes[1]
    flex = insect_skeleton.bones["wing-root-left"].flexibility
    assert spread.time == 500
    assert spread.easing == EaseType.EASE_OUT
    assert spread.properties.rotation == pytest.approx(flex * 0.8)
    assert spread.properties.scale_x == pytest.approx(1 + flex * 0.3)

    assert [(e.name, e.time) for e in sequence.events] == [("loop_start", 0.0), ("celebrate", 500.0)]


def test_scatter_swings_limbs(synthesizer, insect_skeleton):
    sequence = synthesizer.synthesize(insect_skeleton, "scatter", 1000)
    track = sequence.get_track("limb-2")
    assert len(track.keyframes) == 3
    swing = track.keyframes[1]
    assert swing.time == pytest.approx(400)
    assert swing.easing == EaseType.EASE_OUT
    # Insect motion is scaled down to 0.8
    assert swing.properties.rotation == pytest.approx(math.radians(45) * 0.8)


def test_low_tier_breathes(synthesizer, insect_skeleton):
    sequence = synthesizer.synthesize(insect_skeleton, "idle", 1000)
    root = sequence.get_track("root").keyframes
    assert [kf.time for kf in root] == [0, 600, 1000]
    assert root[1].properties.scale_x == pytest.approx(1 + 0.01 * 0.8)


@pytest.mark.parametrize("flex, archetype, tier", [
    (0.3, Archetype.IDLE, "low"),
    (0.8, Archetype.IDLE, "medium"),
    (1.0, Archetype.WIN, "high"),
    (0.5, Archetype.WIN, "medium"),
    (0.7, Archetype.SCATTER, "high"),
])
def test_intensity_tier(flex, archetype, tier):
    assert intensity_tier(flex, archetype) == tier


def test_bone_motion_classes(insect_skeleton):
    classes = {bone_id: bone_motion_class(bone) for bone_id, bone in insect_skeleton.bones.items()}
    assert set(classes.values()) == {"flutter", "swing", None}
    assert classes["wing-tip-left"] == "flutter"
    assert classes["limb-0"] == "swing"
    assert classes["head"] is None
    assert classes["body-segment-0"] is None


def test_synthesis_is_deterministic(synthesizer, insect_skeleton):
    a = synthesizer.synthesize(insect_skeleton, "win", 1200)
    b = synthesizer.synthesize(insect_skeleton, "win", 1200)
    assert track_signature(a) == track_signature(b)


@pytest.mark.parametrize("archetype", ["dance", 3, None])
def test_unknown_archetype(synthesizer, wing_skeleton, archetype):
    with pytest.raises(InvalidInputError):
        synthesizer.synthesize(wing_skeleton, archetype, 1000)


@pytest.mark.parametrize("duration", [0, -5, float("inf"), "1000"])
def test_invalid_duration(synthesizer, wing_skeleton, duration):
    with pytest.raises(InvalidInputError):
        synthesizer.synthesize(wing_skeleton, "idle", duration)


def test_sequence_metadata(synthesizer, insect_skeleton):
    sequence = synthesizer.synthesize(insect_skeleton, "idle", 1000)
    assert sequence.skeleton_id == insect_skeleton.id
    assert sequence.loop
    assert sequence.fps == 60
    assert sequence.metadata.tags == ["idle", "insect"]
    assert sequence.name.endswith("_idle")

# =============================================================================
# EXTRACTED LAYERS
# =============================================================================

def layer(layer_id, layer_type, potential="high", x=40, y=40, w=20, h=20):
    return {
        "layerId": layer_id,
        "name": layer_id.title(),
        "type": layer_type,
        "animationPotential": potential,
        "refinedBounds": {"x": x, "y": y, "width": w, "height": h},
    }


def test_layers_placed_on_canvas(synthesizer):
    sequence = synthesizer.from_layers([layer("sword", "weapon")], "sword_symbol", 1000)
    track = sequence.get_track("sword")
    assert track.color == LAYER_COLORS["weapon"]
    rest = track.keyframes[0].properties
    # Centered layer lands on the canvas center
    assert (rest.x, rest.y) == pytest.approx((1216, 623.5))

    swing = track.keyframes[1]
    assert swing.time == pytest.approx(400)
    assert swing.properties.rotation == pytest.approx(math.radians(45))


def test_layer_motion_by_type(synthesizer):
    sequence = synthesizer.from_layers(
        [layer("glow", "effect"), layer("cape", "clothing"), layer("gem", "accessory", "low")],
        "mixed", 2000)

    pulse = sequence.get_track("glow").keyframes[1]
    assert pulse.time == 1000
    assert pulse.easing == EaseType.ELASTIC
    assert pulse.properties.alpha == pytest.approx(0.8)

    assert [kf.time for kf in sequence.get_track("cape").keyframes] == [0, 500, 1000, 1500, 2000]
    assert [kf.time for kf in sequence.get_track("gem").keyframes] == [0, 1200, 2000]
    sequence.validate()


@pytest.mark.parametrize("layers", [
    [],
    [layer("a", "weapon"), layer("a", "armor")],
    [layer("a", "spaceship")],
    [layer("a", "weapon", potential="extreme")],
    [layer("a", "weapon", x=120)],
    ["not a layer"],
])
def test_invalid_layers(synthesizer, layers):
    with pytest.raises(InvalidInputError):
        synthesizer.from_layers(layers, "broken", 1000)


def test_presets_catalogue():
    presets = get_animation_presets()
    assert [p["id"] for p in presets] == ["idle_gentle", "win_celebration", "scatter_burst"]
    assert {p["category"] for p in presets} == {"idle", "win", "scatter"}
    presets[0]["duration"] = 1
    assert get_animation_presets()[0]["duration"] == 3000
