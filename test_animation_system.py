#!/usr/bin/env python3
"""
╔══════════════════════════════════════════════════════════════════════════════╗
║                    END-TO-END TEST SUITE                                     ║
║                                                                              ║
║   Classifier result → skeleton → keyframes → playback → sprites → export    ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import json

import numpy as np
import pytest

from animation_engine import Archetype, AnatomyType
from timeline_engine import PlaybackState, ManualFrameScheduler
from symbol_rigger import SymbolRigger

FRAME_MS = 1000 / 60


@pytest.fixture
def beetle(rigger, insect_analysis):
    skeleton = rigger.generate_skeleton_from_analysis(insect_analysis, 1024, 1024, name="beetle")
    return skeleton

# =========================================================================
# SECTION 1: RIG
# =========================================================================

def test_beetle_rig(beetle):
    assert beetle.name == "beetle"
    assert beetle.anatomy_type == AnatomyType.INSECT
    assert beetle.root_bone == "root"
    assert set(beetle.ik_constraints) == {"left-wing-ik", "right-wing-ik"}
    beetle.validate()

# =========================================================================
# SECTION 2: EVERY ARCHETYPE THROUGH EVERY FORMAT
# =========================================================================

@pytest.mark.parametrize("archetype", list(Archetype))
@pytest.mark.parametrize("fmt", ["spine", "lottie", "css"])
def test_archetype_exports(rigger, beetle, archetype, fmt):
    sequence = rigger.generate_realistic_animation(beetle.id, archetype, 1200)
    text = rigger.export_animation(fmt)
    assert text
    if fmt == "css":
        assert text.count("@keyframes ") == len(sequence.tracks)
    else:
        data = json.loads(text)
        assert data

# =========================================================================
# SECTION 3: PLAYBACK
# =========================================================================

def test_one_second_loop_at_sixty_fps(rigger, scheduler, beetle):
    sequence = rigger.generate_realistic_animation(beetle.id, "idle", 1000)
    times = []
    rigger.on("timeUpdate", times.append)

    rigger.play()
    scheduler.run(90, FRAME_MS)

    assert len(times) == 90
    assert all(0 <= t <= sequence.duration for t in times)
    # Wrapped once past the end
    assert sum(1 for a, b in zip(times, times[1:]) if b < a) == 1
    assert rigger.playback_state == PlaybackState.PLAYING
    rigger.stop()


def test_loop_seam_is_continuous(rigger, beetle):
    rigger.generate_realistic_animation(beetle.id, "win", 1000)
    start, end = rigger.sample(0), rigger.sample(1000)
    assert start.keys() == end.keys()
    for bone_id in start:
        assert start[bone_id] == end[bone_id]


def test_frames_reach_sprites(rigger, scheduler, insect_analysis, rgba_image):
    small = rigger.generate_skeleton_from_analysis(insect_analysis, 128, 128)
    rigger.generate_realistic_animation(small.id, "scatter", 600)
    graph = rigger.build_sprites(rgba_image, None, small.id)
    rest = {bone_id: node.transform for bone_id, node in graph.nodes.items()}

    rigger.play()
    scheduler.run(12, 25)
    assert rigger.state.current_time == pytest.approx(300)
    moved = [bone_id for bone_id, node in graph.nodes.items() if node.transform != rest[bone_id]]
    assert moved

    frame = np.array(rigger.render_frame(size=(64, 64)))
    assert frame.shape == (64, 64, 4)
    assert frame[:, :, 3].max() > 0


def test_edit_during_playback(rigger, scheduler, beetle):
    sequence = rigger.generate_realistic_animation(beetle.id, "idle", 1000)
    rigger.play()
    scheduler.run(5, 20)
    rigger.add_keyframe("head", 500, {"y": 0.0})
    rigger.pause()
    rigger.seek_to(500)
    assert rigger.timeline.last_frame["head"].y == pytest.approx(0.0, abs=1e-9)
    assert sequence.metadata.modified >= sequence.metadata.created

# =========================================================================
# SECTION 4: LAYERS
# =========================================================================

def test_layer_pipeline(rigger, tmp_path):
    layers = [
        {"layerId": "blade", "type": "weapon", "animationPotential": "high",
         "refinedBounds": {"x": 20, "y": 10, "width": 20, "height": 60}},
        {"layerId": "aura", "type": "effect", "animationPotential": "medium",
         "refinedBounds": {"x": 0, "y": 0, "width": 100, "height": 100}},
        {"layerId": "crest", "type": "armor", "animationPotential": "low",
         "refinedBounds": {"x": 40, "y": 40, "width": 20, "height": 20}},
    ]
    sequence = rigger.create_sequence_from_extracted_layers(layers, "warrior_symbol", 1500)
    assert [t.layer_id for t in sequence.tracks] == ["blade", "aura", "crest"]
    assert sequence.skeleton_id is None

    paths = [rigger.save_export(fmt, tmp_path) for fmt in ("spine", "lottie", "css")]
    assert [p.name for p in paths] == ["warrior_symbol.json", "warrior_symbol.json", "warrior_symbol.css"]
    assert "@keyframes blade-anim" in paths[2].read_text()

# =========================================================================
# SECTION 5: ISOLATION
# =========================================================================

def test_two_engines_play_independently(insect_analysis):
    clock_a, clock_b = ManualFrameScheduler(), ManualFrameScheduler()
    a, b = SymbolRigger(scheduler=clock_a), SymbolRigger(scheduler=clock_b)
    for rigger in (a, b):
        skeleton = rigger.generate_skeleton_from_analysis(insect_analysis, 1024, 1024)
        rigger.generate_realistic_animation(skeleton.id, "idle", 1000)

    a.play()
    clock_a.run(3, 50)
    assert a.state.current_time == pytest.approx(150)
    assert b.state.current_time == 0
    assert clock_b.pending == 0
