#!/usr/bin/env python3
"""
╔══════════════════════════════════════════════════════════════════════════════╗
║                                                                              ║
║                          SYMBOL RIGGER ENGINE                                ║
║                                                                              ║
║   CLASSIFIED SYMBOL IMAGE → SKELETON → KEYFRAMES → PLAYBACK → EXPORT        ║
║                                                                              ║
║   Usage:                                                                     ║
║   >>> rigger = SymbolRigger()                                               ║
║   >>> skeleton = rigger.generate_skeleton_from_analysis(analysis, 1024, 1024)║
║   >>> rigger.generate_realistic_animation(skeleton.id, "idle", 2000)        ║
║   >>> css = rigger.export_animation("css")                                  ║
║                                                                              ║
║   CLI:                                                                       ║
║   $ symbol-rigger rig analysis.json --width 1024 --height 1024 --format css ║
║                                                                              ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

from __future__ import annotations
import json
import sys
from pathlib import Path
from dataclasses import dataclass, asdict, fields
from typing import Dict, List, Optional, Any, Union
import logging

from animation_engine import (
    Skeleton, AnimationSequence, AnimationKeyframe, KeyframeProperties,
    EaseType, Interpolation, RiggerError, InvalidInputError, TimelineError,
    NotFoundError, parse_enum
)
from rig_builder import SkeletonBuilder
from ik_solver import IKSolver, IKSolution
from animation_templates import AnimationSynthesizer, get_animation_presets
from timeline_engine import (
    TimelineEngine, FrameScheduler, RealtimeFrameScheduler, PlaybackState
)
from sprite_segmenter import SegmentedSpriteRenderer, SpriteGraph
from animation_exporter import export_animation, get_exporter, get_supported_export_formats

# =============================================================================
# LOGGING CONFIGURATION
# =============================================================================

class ColoredFormatter(logging.Formatter):
    """Colored log output"""
    COLORS = {
        'DEBUG': '\033[36m',    # Cyan
        'INFO': '\033[32m',     # Green
        'WARNING': '\033[33m',  # Yellow
        'ERROR': '\033[31m',    # Red
        'CRITICAL': '\033[35m', # Magenta
    }
    RESET = '\033[0m'
    BOLD = '\033[1m'

    def format(self, record):
        record = logging.makeLogRecord(record.__dict__)
        color = self.COLORS.get(record.levelname, self.RESET)
        record.levelname = f"{color}{self.BOLD}{record.levelname}{self.RESET}"
        record.msg = f"{color}{record.msg}{self.RESET}"
        return super().format(record)


logger = logging.getLogger("SymbolRigger")
logger.setLevel(logging.INFO)
if not logger.handlers:
    handler = logging.StreamHandler()
    handler.setFormatter(ColoredFormatter('%(levelname)s: %(message)s'))
    # Module loggers below this one print through their own handlers
    handler.addFilter(lambda record: record.name == "SymbolRigger")
    logger.addHandler(handler)

LOGGER_NAMES = (
    "SymbolRigger",
    "SymbolRigger.Build",
    "SymbolRigger.Anim",
    "SymbolRigger.Timeline",
    "SymbolRigger.Sprites",
    "SymbolRigger.Export",
    "SymbolRigger.IK",
)


def configure_logging(level: Union[int, str] = logging.INFO) -> None:
    """Set one level on every Symbol Rigger logger"""
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
    for name in LOGGER_NAMES:
        logging.getLogger(name).setLevel(level)

# =============================================================================
# CONFIGURATION
# =============================================================================

@dataclass
class RiggerConfig:
    """Engine settings; override from a JSON file with from_json()"""
    fps: int = 60
    default_duration_ms: float = 2000
    canvas_width: int = 2432
    canvas_height: int = 1247
    symbol_scale: float = 0.49
    source_image_size: int = 1024
    export_width: int = 1024
    export_height: int = 1024
    output_dir: str = "./output"
    loop: bool = True
    min_speed: float = 0.1
    max_speed: float = 3.0

    def __post_init__(self):
        if self.fps <= 0:
            raise InvalidInputError(f"fps must be > 0, got {self.fps}")
        if self.default_duration_ms <= 0:
            raise InvalidInputError(f"default_duration_ms must be > 0, got {self.default_duration_ms}")
        if not 0 < self.min_speed <= self.max_speed:
            raise InvalidInputError(
                f"Speed range must satisfy 0 < min_speed <= max_speed, got {self.min_speed}..{self.max_speed}")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RiggerConfig':
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise InvalidInputError(f"Unknown config keys: {', '.join(unknown)}")
        return cls(**data)

    @classmethod
    def from_json(cls, path: Union[str, Path]) -> 'RiggerConfig':
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise InvalidInputError(f"Config {path} is not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise InvalidInputError(f"Config {path} must hold a JSON object")
        return cls.from_dict(data)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

# =============================================================================
# ENGINE CONTEXT
# =============================================================================

PROPERTY_KEYS = {
    "x": "x",
    "y": "y",
    "rotation": "rotation",
    "scaleX": "scale_x",
    "scale_x": "scale_x",
    "scaleY": "scale_y",
    "scale_y": "scale_y",
    "alpha": "alpha",
    "visible": "visible",
}


class SymbolRigger:
    """
    The engine context.

    Owns its skeleton and sequence registries, one timeline for the active
    sequence and the sprite graph currently attached. Independent instances
    share nothing.
    """

    def __init__(self, config: Optional[RiggerConfig] = None,
                 scheduler: Optional[FrameScheduler] = None):
        self.config = config or RiggerConfig()
        self.skeletons: Dict[str, Skeleton] = {}
        self.sequences: Dict[str, AnimationSequence] = {}
        self.current_sequence_id: Optional[str] = None
        self.sprite_graph: Optional[SpriteGraph] = None

        self.builder = SkeletonBuilder()
        self.synthesizer = AnimationSynthesizer(fps=self.config.fps, loop=self.config.loop)
        self.renderer = SegmentedSpriteRenderer()
        self.ik_solver = IKSolver()
        self.timeline = TimelineEngine(scheduler, self.config.min_speed, self.config.max_speed)
        self.timeline.on("frame", self._apply_frame)

        logger.info("SymbolRigger initialized ✓")

    # -------------------------------------------------------------------------
    # Registries
    # -------------------------------------------------------------------------

    def get_skeleton(self, skeleton_id: str) -> Skeleton:
        try:
            return self.skeletons[skeleton_id]
        except KeyError:
            raise NotFoundError(f"Skeleton '{skeleton_id}' not found") from None

    def get_sequence(self, sequence_id: Optional[str] = None) -> AnimationSequence:
        sequence_id = sequence_id or self.current_sequence_id
        if sequence_id is None:
            raise NotFoundError("No animation sequence has been created")
        try:
            return self.sequences[sequence_id]
        except KeyError:
            raise NotFoundError(f"Sequence '{sequence_id}' not found") from None

    def list_sequences(self) -> List[dict]:
        return [
            {
                "id": s.id,
                "name": s.name,
                "duration": s.duration,
                "tracks": len(s.tracks),
                "skeletonId": s.skeleton_id,
                "current": s.id == self.current_sequence_id,
            }
            for s in self.sequences.values()
        ]

    def load_sequence(self, sequence_id: str) -> AnimationSequence:
        sequence = self.get_sequence(sequence_id)
        skeleton = self.skeletons.get(sequence.skeleton_id) if sequence.skeleton_id else None
        self.timeline.load(sequence, skeleton)
        self.current_sequence_id = sequence.id
        return sequence

    def reset_pose(self, skeleton_id: str) -> None:
        self.get_skeleton(skeleton_id).reset_pose()

    # -------------------------------------------------------------------------
    # Public operations
    # -------------------------------------------------------------------------

    def generate_skeleton_from_analysis(self, analysis: Any, width: int, height: int,
                                        name: Optional[str] = None) -> Skeleton:
        skeleton = self.builder.build(analysis, width, height, name=name)
        self.skeletons[skeleton.id] = skeleton
        return skeleton

    def generate_realistic_animation(self, skeleton_id: str, archetype: Any,
                                     duration: Optional[float] = None) -> AnimationSequence:
        skeleton = self.get_skeleton(skeleton_id)
        duration = self.config.default_duration_ms if duration is None else duration
        sequence = self.synthesizer.synthesize(skeleton, archetype, duration)
        return self._register(sequence)

    def create_sequence_from_extracted_layers(self, layers: List[Any], name: str,
                                              duration: Optional[float] = None) -> AnimationSequence:
        duration = self.config.default_duration_ms if duration is None else duration
        sequence = self.synthesizer.from_layers(
            layers, name, duration,
            canvas_size=(self.config.canvas_width, self.config.canvas_height),
            symbol_scale=self.config.symbol_scale,
            source_size=self.config.source_image_size,
        )
        return self._register(sequence)

    def _register(self, sequence: AnimationSequence) -> AnimationSequence:
        self.sequences[sequence.id] = sequence
        self.load_sequence(sequence.id)
        return sequence

    # -------------------------------------------------------------------------
    # Playback
    # -------------------------------------------------------------------------

    def play(self) -> None:
        self.timeline.play()

    def pause(self) -> None:
        self.timeline.pause()

    def stop(self) -> None:
        self.timeline.stop()

    def seek_to(self, t: float) -> None:
        self.timeline.seek_to(t)

    def set_speed(self, speed: float) -> float:
        return self.timeline.set_speed(speed)

    def on(self, event: str, callback) -> None:
        self.timeline.on(event, callback)

    def off(self, event: str, callback) -> None:
        self.timeline.off(event, callback)

    @property
    def state(self):
        return self.timeline.state

    @property
    def playback_state(self) -> PlaybackState:
        return self.timeline.playback_state

    def sample(self, t: float) -> Dict[str, KeyframeProperties]:
        return self.timeline.sample(t)

    # -------------------------------------------------------------------------
    # Track editing
    # -------------------------------------------------------------------------

    def add_keyframe(self, track_id: str, time_ms: float,
                     properties: Union[dict, KeyframeProperties, None] = None,
                     easing: Any = EaseType.LINEAR,
                     interpolation: Any = Interpolation.SMOOTH,
                     sequence_id: Optional[str] = None) -> AnimationKeyframe:
        """
        Insert (or replace) a keyframe. Unspecified properties take the
        track's sampled value at that time. On a looping sequence the 0 and
        duration keyframes are kept identical.
        """
        sequence = self.get_sequence(sequence_id)
        track = sequence.get_track(track_id)
        if track.locked:
            raise TimelineError(f"Track '{track.id}' is locked")
        if not isinstance(time_ms, (int, float)) or not 0 <= time_ms <= sequence.duration:
            raise InvalidInputError(
                f"Keyframe time must be within [0, {sequence.duration}], got {time_ms!r}")

        if isinstance(properties, KeyframeProperties):
            props = properties
        else:
            skeleton = self.skeletons.get(sequence.skeleton_id) if sequence.skeleton_id else None
            current = self.timeline.sampler.sample_track(track, time_ms, sequence, skeleton)
            props = _merge_properties(current, properties or {})

        keyframe = AnimationKeyframe(
            time=float(time_ms),
            layer_id=track.layer_id,
            properties=props,
            easing=parse_enum(EaseType, easing, "easing"),
            interpolation=parse_enum(Interpolation, interpolation, "interpolation"),
        )
        track.insert(keyframe)

        if sequence.loop and time_ms in (0, sequence.duration):
            mirror_time = sequence.duration if time_ms == 0 else 0.0
            mirror = next((kf for kf in track.keyframes if kf.time == mirror_time), None)
            easing_for_mirror = mirror.easing if mirror is not None else keyframe.easing
            track.insert(AnimationKeyframe(
                time=float(mirror_time),
                layer_id=track.layer_id,
                properties=props,
                easing=easing_for_mirror,
                interpolation=keyframe.interpolation,
            ))

        sequence.touch()
        logger.debug(f"+ keyframe {keyframe.id} on {track.id} @ {time_ms}ms")
        return keyframe

    def remove_keyframe(self, track_id: str, keyframe_id: str,
                        sequence_id: Optional[str] = None) -> AnimationKeyframe:
        sequence = self.get_sequence(sequence_id)
        track = sequence.get_track(track_id)
        target = next((kf for kf in track.keyframes if kf.id == keyframe_id), None)
        if target is not None and sequence.loop and target.time in (0, sequence.duration):
            raise TimelineError("Loop boundary keyframes at 0 and duration cannot be removed")
        removed = track.remove(keyframe_id)
        sequence.touch()
        return removed

    def set_track_flags(self, track_id: str, locked: Optional[bool] = None,
                        muted: Optional[bool] = None, solo: Optional[bool] = None,
                        sequence_id: Optional[str] = None) -> None:
        track = self.get_sequence(sequence_id).get_track(track_id)
        if locked is not None:
            track.locked = bool(locked)
        if muted is not None:
            track.muted = bool(muted)
        if solo is not None:
            track.solo = bool(solo)

    # -------------------------------------------------------------------------
    # IK
    # -------------------------------------------------------------------------

    def solve_ik(self, skeleton_id: str, constraint_id: str, target_xy,
                 apply: bool = False) -> IKSolution:
        skeleton = self.get_skeleton(skeleton_id)
        try:
            constraint = skeleton.ik_constraints[constraint_id]
        except KeyError:
            raise NotFoundError(f"IK constraint '{constraint_id}' not found") from None
        return self.ik_solver.solve(skeleton, constraint, tuple(target_xy), apply=apply)

    # -------------------------------------------------------------------------
    # Sprites
    # -------------------------------------------------------------------------

    def build_sprites(self, image: Any, segmentation: Any, skeleton_id: str) -> SpriteGraph:
        """Build a sprite graph and attach it; the previous graph is released only on success"""
        graph = self.renderer.build(image, segmentation, self.get_skeleton(skeleton_id))
        if self.sprite_graph is not None:
            self.sprite_graph.close()
        self.sprite_graph = graph
        if self.timeline.last_frame:
            self.renderer.update(graph, self.timeline.last_frame)
        return graph

    def _apply_frame(self, frame: Dict[str, KeyframeProperties]) -> None:
        if self.sprite_graph is not None:
            self.renderer.update(self.sprite_graph, frame)

    def render_frame(self, size=None):
        if self.sprite_graph is None:
            raise TimelineError("No sprite graph attached")
        return self.renderer.compose(self.sprite_graph, size)

    def render_gif(self, path: Union[str, Path], size=None, fps: Optional[int] = None) -> Path:
        if self.sprite_graph is None:
            raise TimelineError("No sprite graph attached")
        sequence = self.get_sequence()
        skeleton = self.skeletons.get(sequence.skeleton_id) if sequence.skeleton_id else None
        return self.renderer.render_gif(self.sprite_graph, sequence, path, skeleton, size, fps)

    # -------------------------------------------------------------------------
    # Export
    # -------------------------------------------------------------------------

    def export_animation(self, fmt: str, sequence_id: Optional[str] = None) -> str:
        get_exporter(fmt)
        try:
            sequence = self.get_sequence(sequence_id)
        except NotFoundError:
            if sequence_id is not None:
                raise
            sequence = None
        skeleton = None
        if sequence is not None and sequence.skeleton_id:
            skeleton = self.skeletons.get(sequence.skeleton_id)
        return export_animation(sequence, fmt, skeleton,
                                self.config.export_width, self.config.export_height)

    def save_export(self, fmt: str, output_dir: Optional[Union[str, Path]] = None,
                    sequence_id: Optional[str] = None) -> Path:
        text = self.export_animation(fmt, sequence_id)
        sequence = self.get_sequence(sequence_id)
        out_dir = Path(output_dir or self.config.output_dir)
        out_dir.mkdir(parents=True, exist_ok=True)
        path = out_dir / f"{sequence.name}{get_exporter(fmt).extension}"
        path.write_text(text, encoding="utf-8")
        logger.info(f"✅ Export written: {path}")
        return path

    @staticmethod
    def get_animation_presets() -> List[dict]:
        return get_animation_presets()

    @staticmethod
    def get_supported_export_formats() -> List[dict]:
        return get_supported_export_formats()


def _merge_properties(base: KeyframeProperties, overrides: dict) -> KeyframeProperties:
    values = base.to_dict()
    for key, value in overrides.items():
        if key not in PROPERTY_KEYS:
            raise InvalidInputError(f"Unknown keyframe property '{key}'")
        values[{"scale_x": "scaleX", "scale_y": "scaleY"}.get(key, key)] = value
    return KeyframeProperties(
        x=float(values["x"]),
        y=float(values["y"]),
        rotation=float(values["rotation"]),
        scale_x=float(values["scaleX"]),
        scale_y=float(values["scaleY"]),
        alpha=float(values["alpha"]),
        visible=bool(values["visible"]),
    )

# =============================================================================
# CLI
# =============================================================================

def _load_json(path: str) -> Any:
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except json.JSONDecodeError as e:
        raise InvalidInputError(f"{path} is not valid JSON: {e}") from e


def _rigger_from_args(args) -> SymbolRigger:
    config = RiggerConfig.from_json(args.config) if args.config else RiggerConfig()
    if getattr(args, "output", None):
        config.output_dir = args.output
    return SymbolRigger(config)


def _cmd_rig(args) -> int:
    rigger = _rigger_from_args(args)
    skeleton = rigger.generate_skeleton_from_analysis(_load_json(args.analysis), args.width, args.height)
    rigger.generate_realistic_animation(skeleton.id, args.archetype, args.duration)
    path = rigger.save_export(args.format)
    print(f"\n✅ {args.format} export written to: {path}")
    return 0


def _cmd_layers(args) -> int:
    rigger = _rigger_from_args(args)
    data = _load_json(args.layers)
    layers = data.get("layers") if isinstance(data, dict) else data
    rigger.create_sequence_from_extracted_layers(layers, args.name, args.duration)
    path = rigger.save_export(args.format)
    print(f"\n✅ {args.format} export written to: {path}")
    return 0


def _cmd_preview(args) -> int:
    rigger = _rigger_from_args(args)
    skeleton = rigger.generate_skeleton_from_analysis(_load_json(args.analysis), args.width, args.height)
    rigger.generate_realistic_animation(skeleton.id, args.archetype, args.duration)
    segmentation = _load_json(args.segmentation) if args.segmentation else None
    rigger.build_sprites(args.image, segmentation, skeleton.id)
    path = rigger.render_gif(args.gif)
    print(f"\n✅ Preview written to: {path}")
    return 0


def _cmd_formats(args) -> int:
    print("\nEXPORT FORMATS:")
    for fmt in get_supported_export_formats():
        caps = fmt["capabilities"]
        flags = ", ".join(k.replace("supports", "").lower() for k, v in caps.items() if v)
        print(f"  {fmt['id']:<8} {fmt['extension']:<6} {fmt['description']} [{flags}]")
    return 0


def _cmd_play(args) -> int:
    rigger = SymbolRigger(RiggerConfig.from_json(args.config) if args.config else None,
                          scheduler=RealtimeFrameScheduler())
    skeleton = rigger.generate_skeleton_from_analysis(_load_json(args.analysis), args.width, args.height)
    sequence = rigger.generate_realistic_animation(skeleton.id, args.archetype, args.duration)
    sequence.loop = False
    rigger.set_speed(args.speed)
    rigger.on("complete", lambda seq: print(f"✓ {seq.name} finished"))
    rigger.play()
    rigger.timeline.scheduler.run_until_idle()
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    import argparse

    parser = argparse.ArgumentParser(
        prog="symbol-rigger",
        description="Symbol Rigger - skeletal rigs and keyframe animation from classified symbol art",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
EXAMPLES:
  # Rig a classified beetle and export an idle loop as Spine JSON
  symbol-rigger rig beetle.json --width 1024 --height 1024 --archetype idle

  # CSS keyframes for extracted layers
  symbol-rigger layers layers.json --name sword_symbol --format css

  # Animated GIF preview through the segmented sprite renderer
  symbol-rigger preview beetle.json beetle.png --width 1024 --height 1024 --gif out.gif

ARCHETYPES:
  idle      - Gentle looping motion, wing flutter
  win       - Celebration with wing spread
  scatter   - Energetic burst
        """
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    parser.add_argument("--quiet", "-q", action="store_true", help="Warnings and errors only")
    sub = parser.add_subparsers(dest="command", required=True)

    def add_common(p, with_format=True):
        p.add_argument("--duration", "-d", type=float, default=None, help="Duration in ms")
        p.add_argument("--config", "-c", help="JSON config overrides")
        p.add_argument("--output", "-o", help="Output directory")
        if with_format:
            p.add_argument("--format", "-f", default="spine", choices=sorted(["spine", "lottie", "css"]),
                           help="Export format (default: spine)")

    def add_rig_inputs(p):
        p.add_argument("--width", type=int, required=True, help="Source image width")
        p.add_argument("--height", type=int, required=True, help="Source image height")
        p.add_argument("--archetype", "-a", default="idle", choices=["idle", "win", "scatter"])

    p_rig = sub.add_parser("rig", help="Build a skeleton, synthesize an archetype and export it")
    p_rig.add_argument("analysis", help="Classifier result JSON")
    add_rig_inputs(p_rig)
    add_common(p_rig)
    p_rig.set_defaults(func=_cmd_rig)

    p_layers = sub.add_parser("layers", help="Animate extracted layers and export them")
    p_layers.add_argument("layers", help="Extracted layers JSON")
    p_layers.add_argument("--name", "-n", default="layer_animation", help="Sequence name")
    add_common(p_layers)
    p_layers.set_defaults(func=_cmd_layers)

    p_preview = sub.add_parser("preview", help="Render an animated GIF preview")
    p_preview.add_argument("analysis", help="Classifier result JSON")
    p_preview.add_argument("image", help="Source image")
    p_preview.add_argument("--segmentation", "-s", help="Segmentation JSON")
    p_preview.add_argument("--gif", required=True, help="Output GIF path")
    add_rig_inputs(p_preview)
    add_common(p_preview, with_format=False)
    p_preview.set_defaults(func=_cmd_preview)

    p_play = sub.add_parser("play", help="Play one pass of an animation in real time")
    p_play.add_argument("analysis", help="Classifier result JSON")
    p_play.add_argument("--speed", type=float, default=1.0, help="Playback speed (0.1 - 3.0)")
    add_rig_inputs(p_play)
    add_common(p_play, with_format=False)
    p_play.set_defaults(func=_cmd_play)

    p_formats = sub.add_parser("formats", help="List export formats and their capabilities")
    p_formats.set_defaults(func=_cmd_formats)

    args = parser.parse_args(argv)

    if args.verbose:
        configure_logging(logging.DEBUG)
    elif args.quiet:
        configure_logging(logging.WARNING)

    try:
        return args.func(args)
    except (RiggerError, OSError) as e:
        logger.error(str(e))
        return 1


if __name__ == "__main__":
    sys.exit(main())
