#!/usr/bin/env python3
"""
╔══════════════════════════════════════════════════════════════════════════════╗
║                                                                              ║
║                   SYMBOL RIGGER - ANIMATION EXPORTERS                        ║
║                                                                              ║
║   Stateless AnimationSequence → text translators                            ║
║   • spine   Skeletal rig JSON (bones, slots, ik, skins, animations)         ║
║   • lottie  Vector animation JSON (one layer per track)                     ║
║   • css     @keyframes blocks (one per track)                               ║
║                                                                              ║
╚══════════════════════════════════════════════════════════════════════════════╝

Features a format cannot express are dropped with a warning, never an error.
"""

from __future__ import annotations
import json
import math
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
import logging

from animation_engine import (
    AnimationSequence, AnimationTrack, AnimationKeyframe, KeyframeProperties,
    Skeleton, EaseType, Interpolation, ExportError
)

logger = logging.getLogger("SymbolRigger.Export")
logger.setLevel(logging.INFO)
if not logger.handlers:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(
        '\033[96m\033[1mEXPORT\033[0m: \033[96m%(message)s\033[0m'
    ))
    logger.addHandler(handler)

# =============================================================================
# SHARED HELPERS
# =============================================================================

# Cubic-bezier handles (x1, y1, x2, y2) approximating each easing
EASING_BEZIER = {
    EaseType.LINEAR: (0.0, 0.0, 1.0, 1.0),
    EaseType.EASE_IN: (0.42, 0.0, 1.0, 1.0),
    EaseType.EASE_OUT: (0.0, 0.0, 0.58, 1.0),
    EaseType.EASE_IN_OUT: (0.42, 0.0, 0.58, 1.0),
    EaseType.BOUNCE: (0.34, 1.56, 0.64, 1.0),
    EaseType.ELASTIC: (0.68, -0.55, 0.27, 1.55),
}

SPINE_VERSION = "4.1.23"
LOTTIE_VERSION = "5.7.0"


def degrees(radians: float) -> float:
    return radians * 180 / math.pi


def _num(value: float, places: int = 3) -> float:
    value = round(value, places)
    return 0.0 if value == 0 else value


def _segment_curve(keyframes: List[AnimationKeyframe], index: int):
    """Curve leaving keyframe `index`: its interpolation, the next keyframe's easing"""
    if keyframes[index].interpolation == Interpolation.STEPPED:
        return "stepped"
    if index + 1 >= len(keyframes):
        return None
    return keyframes[index + 1].easing


def _rest_pose(track: AnimationTrack, skeleton: Optional[Skeleton]) -> KeyframeProperties:
    if skeleton is not None and track.layer_id in skeleton.bones:
        return KeyframeProperties.from_transform(skeleton.bones[track.layer_id].original_transform)
    if track.keyframes:
        return track.keyframes[0].properties
    return KeyframeProperties()


@dataclass(frozen=True)
class ExportCapabilities:
    supports_layers: bool
    supports_easing: bool
    supports_events: bool
    supports_audio: bool

    def to_dict(self) -> dict:
        return {
            "supportsLayers": self.supports_layers,
            "supportsEasing": self.supports_easing,
            "supportsEvents": self.supports_events,
            "supportsAudio": self.supports_audio,
        }


class SequenceExporter(ABC):
    """Base translator; subclasses declare their id and capability matrix"""

    format_id = ""
    name = ""
    extension = ""
    description = ""
    capabilities = ExportCapabilities(True, True, False, False)

    def export(self, sequence: AnimationSequence, skeleton: Optional[Skeleton] = None,
               width: int = 1024, height: int = 1024) -> str:
        self._warn_omitted(sequence)
        text = self._render(sequence, skeleton, width, height)
        logger.info(f"Exported '{sequence.name}' as {self.format_id} ✓ ({len(text)} chars)")
        return text

    @abstractmethod
    def _render(self, sequence: AnimationSequence, skeleton: Optional[Skeleton],
                width: int, height: int) -> str:
        pass

    def _warn_omitted(self, sequence: AnimationSequence) -> None:
        omitted = []
        if sequence.events and not self.capabilities.supports_events:
            omitted.append(f"{len(sequence.events)} events")
        if omitted:
            logger.warning(f"{self.format_id} cannot express {', '.join(omitted)}; omitted")

    def describe(self) -> dict:
        return {
            "id": self.format_id,
            "name": self.name,
            "extension": self.extension,
            "description": self.description,
            "capabilities": self.capabilities.to_dict(),
        }

# =============================================================================
# SPINE
# =============================================================================

class SpineExporter(SequenceExporter):
    format_id = "spine"
    name = "Spine JSON"
    extension = ".json"
    description = "Skeletal rig with bones, slots, IK and keyed animation"
    capabilities = ExportCapabilities(True, True, True, False)

    def _render(self, sequence, skeleton, width, height):
        return json.dumps(self.to_dict(sequence, skeleton, width, height), indent=2)

    def to_dict(self, sequence: AnimationSequence, skeleton: Optional[Skeleton] = None,
                width: int = 1024, height: int = 1024) -> dict:
        if skeleton is not None:
            bones, slots, skin, ik = self._rig_from_skeleton(skeleton)
            width, height = skeleton.width or width, skeleton.height or height
        else:
            bones, slots, skin, ik = self._rig_from_tracks(sequence)

        data = {
            "skeleton": {
                "hash": skeleton.id if skeleton is not None else sequence.id,
                "spine": SPINE_VERSION,
                "x": 0,
                "y": 0,
                "width": width,
                "height": height,
                "fps": sequence.fps,
                "images": "./images/",
                "audio": "./audio/",
            },
            "bones": bones,
            "slots": slots,
            "ik": ik,
            "skins": [{"name": "default", "attachments": skin}],
            "animations": {sequence.name: self._animation(sequence, skeleton, slots)},
        }
        if sequence.events:
            data["events"] = {
                e.name: {"int": e.int_value, "float": e.float_value, "string": e.string_value}
                for e in sequence.events
            }
        return data

    def _rig_from_skeleton(self, skeleton: Skeleton):
        bones = []
        for bone in skeleton.iter_bones():
            t = bone.original_transform
            entry = {"name": bone.id, "length": _num(bone.length)}
            if bone.parent is not None:
                parent = skeleton.bones[bone.parent].original_transform
                entry["parent"] = bone.parent
                entry["x"], entry["y"] = _num(t.x - parent.x), _num(t.y - parent.y)
            else:
                entry["x"], entry["y"] = _num(t.x), _num(t.y)
            entry["rotation"] = _num(degrees(t.rotation))
            entry["scaleX"], entry["scaleY"] = _num(t.scale_x), _num(t.scale_y)
            bones.append(entry)

        # IK targets are positions, not skeleton bones; Spine needs a bone for each
        root = skeleton.bones[skeleton.root_bone].original_transform
        for c in skeleton.ik_constraints.values():
            if c.target in skeleton.bones or any(b["name"] == c.target for b in bones):
                continue
            if c.target_position is not None:
                tx, ty = c.target_position
            else:
                tip = skeleton.bones.get(c.bones[-1]) if c.bones else None
                anchor = tip.original_transform if tip is not None else root
                tx, ty = anchor.x, anchor.y
            bones.append({
                "name": c.target,
                "parent": skeleton.root_bone,
                "x": _num(tx - root.x),
                "y": _num(ty - root.y),
                "rotation": 0.0,
                "scaleX": 1.0,
                "scaleY": 1.0,
            })

        slots = []
        skin = {}
        ordered = sorted(skeleton.attachments.values(), key=lambda a: a.render_order)
        for attachment in ordered:
            slots.append({
                "name": attachment.id,
                "bone": attachment.bone_id,
                "attachment": attachment.texture_id,
            })
            if attachment.deformable and attachment.deform_vertices:
                region = {
                    "type": "mesh",
                    "vertices": [_num(v) for xy in attachment.deform_vertices for v in xy],
                }
            else:
                region = {"type": "region"}
            skin[attachment.id] = {attachment.texture_id: region}

        ik = [
            {
                "name": c.id,
                "order": i,
                "bones": list(c.bones),
                "target": c.target,
                "bendPositive": c.bend_direction > 0,
                "mix": c.mix,
            }
            for i, c in enumerate(skeleton.ik_constraints.values())
        ]
        return bones, slots, skin, ik

    def _rig_from_tracks(self, sequence: AnimationSequence):
        bones = [{"name": "root", "x": 0, "y": 0}]
        slots = []
        skin = {}
        for track in sequence.tracks:
            rest = _rest_pose(track, None)
            bones.append({
                "name": track.layer_id,
                "parent": "root",
                "x": _num(rest.x),
                "y": _num(rest.y),
                "rotation": _num(degrees(rest.rotation)),
            })
            slots.append({"name": track.layer_id, "bone": track.layer_id, "attachment": track.layer_id})
            skin[track.layer_id] = {track.layer_id: {"type": "region"}}
        return bones, slots, skin, []

    def _animation(self, sequence: AnimationSequence, skeleton: Optional[Skeleton],
                   slots: List[dict]) -> dict:
        bone_timelines = {}
        slot_timelines = {}
        slots_by_bone = {}
        for slot in slots:
            slots_by_bone.setdefault(slot["bone"], []).append(slot["name"])

        for track in sequence.tracks:
            if not track.keyframes:
                continue
            rest = _rest_pose(track, skeleton)
            keyframes = track.keyframes
            channels = [self._channels(kf.properties, rest) for kf in keyframes]
            rotate, translate, scale, rgba = [], [], [], []
            for i, kf in enumerate(keyframes):
                c = channels[i]
                seconds = _num(kf.time / 1000.0, 4)
                kind = _segment_curve(keyframes, i)
                following = channels[i + 1] if i + 1 < len(keyframes) else c
                end = keyframes[i + 1].time / 1000.0 if i + 1 < len(keyframes) else kf.time / 1000.0

                def curve(*names):
                    pairs = [(c[n], following[n]) for n in names]
                    return self._curve(kind, kf.time / 1000.0, end, pairs)

                rotate.append(self._key(seconds, curve("rotate"), value=c["rotate"]))
                translate.append(self._key(seconds, curve("x", "y"), x=c["x"], y=c["y"]))
                scale.append(self._key(seconds, curve("scaleX", "scaleY"), x=c["scaleX"], y=c["scaleY"]))
                rgba.append(self._key(seconds, curve("red", "green", "blue", "alpha"),
                                      color=f"ffffff{int(round(c['alpha'] * 255)):02x}"))

            bone_timelines[track.layer_id] = {"rotate": rotate, "translate": translate, "scale": scale}
            if any(k["color"] != "ffffffff" for k in rgba):
                for slot_name in slots_by_bone.get(track.layer_id, []):
                    slot_timelines[slot_name] = {"rgba": rgba}

        animation = {"bones": bone_timelines}
        if slot_timelines:
            animation["slots"] = slot_timelines
        if sequence.events:
            animation["events"] = [
                {"time": _num(e.time / 1000.0, 4), "name": e.name}
                for e in sorted(sequence.events, key=lambda e: e.time)
            ]
        return animation

    @staticmethod
    def _channels(p: KeyframeProperties, rest: KeyframeProperties) -> dict:
        """Timeline values relative to the setup pose"""
        return {
            "rotate": _num(degrees(p.rotation - rest.rotation)),
            "x": _num(p.x - rest.x),
            "y": _num(p.y - rest.y),
            "scaleX": _num(p.scale_x / rest.scale_x if rest.scale_x else p.scale_x),
            "scaleY": _num(p.scale_y / rest.scale_y if rest.scale_y else p.scale_y),
            "red": 1.0,
            "green": 1.0,
            "blue": 1.0,
            "alpha": max(0.0, min(1.0, p.alpha if p.visible else 0.0)),
        }

    @staticmethod
    def _curve(kind, start: float, end: float, pairs):
        """
        Spine 4.x bezier: one (cx1, cy1, cx2, cy2) set per channel, in
        absolute seconds and channel units.
        """
        if kind is None or kind == EaseType.LINEAR:
            return None
        if kind == "stepped":
            return "stepped"
        x1, y1, x2, y2 = EASING_BEZIER[kind]
        span = end - start
        curve = []
        for v0, v1 in pairs:
            delta = v1 - v0
            curve += [_num(start + x1 * span, 4), _num(v0 + y1 * delta),
                      _num(start + x2 * span, 4), _num(v0 + y2 * delta)]
        return curve

    @staticmethod
    def _key(seconds: float, curve, **values) -> dict:
        key = {"time": seconds, **values}
        if curve is not None:
            key["curve"] = curve
        return key

# =============================================================================
# LOTTIE
# =============================================================================

class LottieExporter(SequenceExporter):
    format_id = "lottie"
    name = "Lottie JSON"
    extension = ".json"
    description = "Vector animation for web and mobile players"
    capabilities = ExportCapabilities(True, True, False, False)

    def _render(self, sequence, skeleton, width, height):
        return json.dumps(self.to_dict(sequence, skeleton, width, height), indent=2)

    def to_dict(self, sequence: AnimationSequence, skeleton: Optional[Skeleton] = None,
                width: int = 1024, height: int = 1024) -> dict:
        fps = sequence.fps
        out_point = _num(sequence.duration / 1000.0 * fps)
        layers = []
        assets = []
        for i, track in enumerate(sequence.tracks):
            assets.append({"id": track.layer_id, "w": width, "h": height,
                           "u": "images/", "p": f"{track.layer_id}.png", "e": 0})
            layer = {
                "ddd": 0,
                "ind": i + 1,
                "ty": 2,
                "nm": track.layer_name,
                "refId": track.layer_id,
                "ks": self._transform(track, skeleton, fps),
                "ao": 0,
                "ip": 0,
                "op": out_point,
                "st": 0,
            }
            if track.muted:
                layer["hd"] = True
            layers.append(layer)

        return {
            "v": LOTTIE_VERSION,
            "fr": fps,
            "ip": 0,
            "op": out_point,
            "w": width,
            "h": height,
            "nm": sequence.name,
            "ddd": 0,
            "assets": assets,
            "layers": layers,
        }

    def _transform(self, track: AnimationTrack, skeleton: Optional[Skeleton], fps: int) -> dict:
        if not track.keyframes:
            rest = _rest_pose(track, skeleton)
            return {
                "o": {"a": 0, "k": _num(rest.alpha * 100)},
                "r": {"a": 0, "k": _num(degrees(rest.rotation))},
                "p": {"a": 0, "k": [_num(rest.x), _num(rest.y), 0]},
                "a": {"a": 0, "k": [0, 0, 0]},
                "s": {"a": 0, "k": [_num(rest.scale_x * 100), _num(rest.scale_y * 100), 100]},
            }
        return {
            "o": self._animated(track, fps, lambda p: [_num((p.alpha if p.visible else 0) * 100)]),
            "r": self._animated(track, fps, lambda p: [_num(degrees(p.rotation))]),
            "p": self._animated(track, fps, lambda p: [_num(p.x), _num(p.y), 0]),
            "a": {"a": 0, "k": [0, 0, 0]},
            "s": self._animated(track, fps, lambda p: [_num(p.scale_x * 100), _num(p.scale_y * 100), 100]),
        }

    @staticmethod
    def _animated(track: AnimationTrack, fps: int, value) -> dict:
        keys = []
        frames = track.keyframes
        for i, kf in enumerate(frames):
            key: Dict[str, Any] = {"t": _num(kf.time / 1000.0 * fps), "s": value(kf.properties)}
            curve = _segment_curve(frames, i)
            if curve == "stepped":
                key["h"] = 1
            elif curve is not None:
                x1, y1, x2, y2 = EASING_BEZIER[curve]
                key["o"] = {"x": [x1], "y": [y1]}
                key["i"] = {"x": [x2], "y": [y2]}
            keys.append(key)
        if len(keys) == 1:
            return {"a": 0, "k": keys[0]["s"]}
        return {"a": 1, "k": keys}

# =============================================================================
# CSS
# =============================================================================

def css_identifier(text: str) -> str:
    slug = re.sub(r"[^a-zA-Z0-9_-]+", "-", text.strip()).strip("-").lower()
    if not slug or slug[0].isdigit():
        slug = f"l-{slug}"
    return slug


class CssExporter(SequenceExporter):
    format_id = "css"
    name = "CSS Animation"
    extension = ".css"
    description = "CSS @keyframes for lightweight web previews"
    capabilities = ExportCapabilities(True, True, False, False)

    def _render(self, sequence, skeleton, width, height):
        duration = _num(sequence.duration, 0)
        if not sequence.loop:
            iteration = "1 forwards"
        elif sequence.auto_reverse:
            iteration = "infinite alternate"
        else:
            iteration = "infinite"

        lines = [
            f"/* Animation: {sequence.name} */",
            ".animation-container {",
            "  position: relative;",
            f"  width: {width}px;",
            f"  height: {height}px;",
            "}",
            "",
        ]

        used = set()
        for track in sequence.tracks:
            ident = css_identifier(track.layer_name)
            if ident in used:
                ident = css_identifier(track.layer_id)
            used.add(ident)
            rest = _rest_pose(track, skeleton)

            lines += [
                f".layer-{css_identifier(track.layer_id)} {{",
                "  position: absolute;",
                f"  left: {_fmt(rest.x)}px;",
                f"  top: {_fmt(rest.y)}px;",
                f"  animation: {ident}-anim {_fmt(duration)}ms {iteration};",
                "}",
                "",
                f"@keyframes {ident}-anim {{",
            ]
            for i, kf in enumerate(track.keyframes):
                lines.append(self._step(kf, rest, sequence.duration, _segment_curve(track.keyframes, i)))
            lines += ["}", ""]
        return "\n".join(lines)

    @staticmethod
    def _step(kf: AnimationKeyframe, rest: KeyframeProperties, duration: float, curve) -> str:
        p = kf.properties
        percent = f"{kf.time / duration * 100:.1f}%"
        declarations = [
            f"transform: translate({_fmt(p.x - rest.x)}px, {_fmt(p.y - rest.y)}px) "
            f"rotate({_fmt(degrees(p.rotation))}deg) scale({_fmt(p.scale_x)}, {_fmt(p.scale_y)})",
            f"opacity: {_fmt(p.alpha)}",
        ]
        if not p.visible:
            declarations.append("visibility: hidden")
        if curve == "stepped":
            declarations.append("animation-timing-function: steps(1, end)")
        elif curve is not None and curve != EaseType.LINEAR:
            declarations.append("animation-timing-function: cubic-bezier({}, {}, {}, {})".format(
                *(_fmt(v) for v in EASING_BEZIER[curve])))
        return f"  {percent} {{ {'; '.join(declarations)}; }}"


def _fmt(value: float) -> str:
    text = f"{_num(value):.3f}".rstrip("0").rstrip(".")
    return text if text not in ("", "-0") else "0"

# =============================================================================
# REGISTRY
# =============================================================================

EXPORTERS: Dict[str, SequenceExporter] = {
    exporter.format_id: exporter
    for exporter in (SpineExporter(), LottieExporter(), CssExporter())
}


def get_exporter(fmt: str) -> SequenceExporter:
    exporter = EXPORTERS.get(str(fmt).lower())
    if exporter is None:
        raise ExportError(f"Unknown export format '{fmt}'. Expected one of: {', '.join(EXPORTERS)}")
    return exporter


def get_supported_export_formats() -> List[dict]:
    return [exporter.describe() for exporter in EXPORTERS.values()]


def export_animation(sequence: Optional[AnimationSequence], fmt: str,
                     skeleton: Optional[Skeleton] = None,
                     width: int = 1024, height: int = 1024) -> str:
    exporter = get_exporter(fmt)
    if sequence is None:
        raise ExportError("No animation sequence to export")
    return exporter.export(sequence, skeleton, width, height)
