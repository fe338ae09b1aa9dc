#!/usr/bin/env python3
"""
╔══════════════════════════════════════════════════════════════════════════════╗
║                                                                              ║
║                    SYMBOL RIGGER - TIMELINE ENGINE                           ║
║                                                                              ║
║   • Easing curves (linear, quad in/out, bounce, elastic)                    ║
║   • Pure transform sampler: (sequence, time) → per-track properties        ║
║   • Frame schedulers (manual clock for tests, realtime loop)                ║
║   • Play / pause / stop / seek / speed state machine                        ║
║                                                                              ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

from __future__ import annotations
import bisect
import math
import time
from abc import ABC, abstractmethod
from enum import Enum
from dataclasses import replace
from typing import Callable, Dict, List, Optional
import logging

from animation_engine import (
    EaseType, Interpolation, KeyframeProperties, AnimationTrack,
    AnimationSequence, Skeleton, TimelineState, TimelineError,
    InvalidInputError, MIN_SCALE
)

logger = logging.getLogger("SymbolRigger.Timeline")
logger.setLevel(logging.INFO)
if not logger.handlers:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(
        '\033[32m\033[1mTIME\033[0m: \033[32m%(message)s\033[0m'
    ))
    logger.addHandler(handler)

MIN_SPEED = 0.1
MAX_SPEED = 3.0

# =============================================================================
# EASING
# =============================================================================

def _bounce_out(t: float) -> float:
    n1 = 7.5625
    d1 = 2.75
    if t < 1 / d1:
        return n1 * t * t
    if t < 2 / d1:
        t -= 1.5 / d1
        return n1 * t * t + 0.75
    if t < 2.5 / d1:
        t -= 2.25 / d1
        return n1 * t * t + 0.9375
    t -= 2.625 / d1
    return n1 * t * t + 0.984375


def _elastic(t: float) -> float:
    if t <= 0:
        return 0.0
    if t >= 1:
        return 1.0
    return -math.pow(2, 10 * (t - 1)) * math.sin((t - 1.1) * 5 * math.pi)


EASING_FUNCTIONS: Dict[EaseType, Callable[[float], float]] = {
    EaseType.LINEAR: lambda t: t,
    EaseType.EASE_IN: lambda t: t * t,
    EaseType.EASE_OUT: lambda t: 1 - (1 - t) * (1 - t),
    EaseType.EASE_IN_OUT: lambda t: 2 * t * t if t < 0.5 else 1 - (-2 * t + 2) ** 2 / 2,
    EaseType.BOUNCE: lambda t: 1 - _bounce_out(1 - t),
    EaseType.ELASTIC: _elastic,
}


def ease(easing: EaseType, t: float) -> float:
    t = max(0.0, min(1.0, t))
    return EASING_FUNCTIONS[easing](t)


def lerp(a: float, b: float, t: float) -> float:
    return a + (b - a) * t


def interpolate(a: KeyframeProperties, b: KeyframeProperties, t: float) -> KeyframeProperties:
    """Independent per-property lerp; visibility switches when the segment completes"""
    return KeyframeProperties(
        x=lerp(a.x, b.x, t),
        y=lerp(a.y, b.y, t),
        rotation=lerp(a.rotation, b.rotation, t),
        scale_x=lerp(a.scale_x, b.scale_x, t),
        scale_y=lerp(a.scale_y, b.scale_y, t),
        alpha=lerp(a.alpha, b.alpha, t),
        visible=b.visible if t >= 1 else a.visible,
    )

# =============================================================================
# TRANSFORM SAMPLER
# =============================================================================

class TransformSampler:
    """
    Pure function of (sequence, time).

    Nothing here mutates the sequence or the skeleton; the skeleton is only
    read for rest poses and constraint limits.
    """

    def sample(self, sequence: AnimationSequence, t: float,
               skeleton: Optional[Skeleton] = None) -> Dict[str, KeyframeProperties]:
        t = max(0.0, min(sequence.duration, t))
        tracks = self.active_tracks(sequence)
        frame = {}
        for track in tracks:
            frame[track.layer_id] = self.sample_track(track, t, sequence, skeleton)
        return frame

    @staticmethod
    def active_tracks(sequence: AnimationSequence) -> List[AnimationTrack]:
        tracks = [tr for tr in sequence.tracks if not tr.muted]
        if any(tr.solo for tr in tracks):
            tracks = [tr for tr in tracks if tr.solo]
        return tracks

    def sample_track(self, track: AnimationTrack, t: float, sequence: AnimationSequence,
                     skeleton: Optional[Skeleton] = None) -> KeyframeProperties:
        bone = skeleton.bones.get(track.layer_id) if skeleton is not None else None

        keyframes = track.keyframes
        if not keyframes:
            if bone is not None:
                return KeyframeProperties.from_transform(bone.original_transform)
            return KeyframeProperties()

        times = [kf.time for kf in keyframes]
        if t < times[0]:
            props = keyframes[0].properties
        elif t >= times[-1]:
            props = self._wrap_segment(keyframes, t, sequence)
        else:
            i = bisect.bisect_right(times, t) - 1
            start, end = keyframes[i], keyframes[i + 1]
            props = self._segment(start, end, (t - start.time) / (end.time - start.time))

        return self._clamp(props, bone)

    def _wrap_segment(self, keyframes, t: float, sequence: AnimationSequence) -> KeyframeProperties:
        prev, nxt = keyframes[-1], keyframes[0]
        if not sequence.loop or len(keyframes) == 1:
            return prev.properties
        span = (sequence.duration - prev.time) + nxt.time
        if span <= 0:
            return prev.properties
        return self._segment(prev, nxt, (t - prev.time) / span)

    @staticmethod
    def _segment(start, end, progress: float) -> KeyframeProperties:
        if start.interpolation == Interpolation.STEPPED:
            return start.properties
        return interpolate(start.properties, end.properties, ease(end.easing, progress))

    @staticmethod
    def _clamp(props: KeyframeProperties, bone=None) -> KeyframeProperties:
        rotation = props.rotation
        scale_x = max(MIN_SCALE, props.scale_x)
        scale_y = max(MIN_SCALE, props.scale_y)
        if bone is not None:
            rotation = bone.constraints.clamp_rotation(rotation)
            scale_x = max(MIN_SCALE, bone.constraints.clamp_scale(scale_x))
            scale_y = max(MIN_SCALE, bone.constraints.clamp_scale(scale_y))
        return replace(
            props,
            rotation=rotation,
            scale_x=scale_x,
            scale_y=scale_y,
            alpha=max(0.0, min(1.0, props.alpha)),
        )

# =============================================================================
# FRAME SCHEDULERS
# =============================================================================

class FrameScheduler(ABC):
    """Host per-frame callback source"""

    @abstractmethod
    def request_frame(self, callback: Callable[[], None]) -> int:
        pass

    @abstractmethod
    def cancel_frame(self, handle: int) -> None:
        pass

    @abstractmethod
    def now(self) -> float:
        """Current time in milliseconds"""
        pass


class ManualFrameScheduler(FrameScheduler):
    """Deterministic clock advanced by hand; counts every callback it fires"""

    def __init__(self, start_ms: float = 0.0):
        self._now = start_ms
        self._next_handle = 1
        self._pending: Dict[int, Callable[[], None]] = {}
        self.fired = 0

    def request_frame(self, callback):
        handle = self._next_handle
        self._next_handle += 1
        self._pending[handle] = callback
        return handle

    def cancel_frame(self, handle):
        self._pending.pop(handle, None)

    def now(self):
        return self._now

    @property
    def pending(self) -> int:
        return len(self._pending)

    def advance(self, dt_ms: float) -> int:
        """Move the clock and fire the callbacks that were pending before the move"""
        self._now += dt_ms
        due = list(self._pending.items())
        self._pending.clear()
        for _, callback in due:
            callback()
            self.fired += 1
        return len(due)

    def run(self, frames: int, dt_ms: float) -> None:
        for _ in range(frames):
            if not self._pending:
                break
            self.advance(dt_ms)


class RealtimeFrameScheduler(ManualFrameScheduler):
    """Wall-clock frame loop for CLI previews"""

    def __init__(self, fps: int = 60):
        super().__init__(time.perf_counter() * 1000)
        self.frame_ms = 1000.0 / fps

    def now(self):
        return time.perf_counter() * 1000

    def run_until_idle(self, max_frames: Optional[int] = None) -> None:
        frames = 0
        while self._pending and (max_frames is None or frames < max_frames):
            time.sleep(self.frame_ms / 1000.0)
            self.advance(0)
            frames += 1

# =============================================================================
# TIMELINE ENGINE
# =============================================================================

class PlaybackState(Enum):
    STOPPED = "stopped"
    PLAYING = "playing"
    PAUSED = "paused"


TIMELINE_EVENTS = ("timeUpdate", "frame", "stateChange", "complete")


class TimelineEngine:
    """Owns the playback cursor of one sequence and drives listeners each tick"""

    def __init__(self, scheduler: Optional[FrameScheduler] = None,
                 min_speed: float = MIN_SPEED, max_speed: float = MAX_SPEED):
        self.scheduler = scheduler or ManualFrameScheduler()
        self.min_speed = min_speed
        self.max_speed = max_speed
        self.sampler = TransformSampler()
        self.state = TimelineState()
        self.sequence: Optional[AnimationSequence] = None
        self.skeleton: Optional[Skeleton] = None
        self.last_frame: Dict[str, KeyframeProperties] = {}
        self._listeners: Dict[str, List[Callable]] = {name: [] for name in TIMELINE_EVENTS}
        self._handle: Optional[int] = None
        self._last_tick: float = 0.0
        self._direction = 1

    # -------------------------------------------------------------------------
    # Events
    # -------------------------------------------------------------------------

    def on(self, event: str, callback: Callable) -> None:
        self._check_event(event)
        self._listeners[event].append(callback)

    def off(self, event: str, callback: Callable) -> None:
        self._check_event(event)
        if callback in self._listeners[event]:
            self._listeners[event].remove(callback)

    def _check_event(self, event: str) -> None:
        if event not in self._listeners:
            raise InvalidInputError(f"Unknown timeline event '{event}'. Expected one of: "
                                    f"{', '.join(TIMELINE_EVENTS)}")

    def _emit(self, event: str, *args) -> None:
        for callback in list(self._listeners[event]):
            callback(*args)

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    @property
    def playback_state(self) -> PlaybackState:
        if self.state.is_playing:
            return PlaybackState.PLAYING
        if self.state.is_paused:
            return PlaybackState.PAUSED
        return PlaybackState.STOPPED

    @property
    def current_time(self) -> float:
        return self.state.current_time

    @property
    def is_playing(self) -> bool:
        return self.state.is_playing

    def load(self, sequence: AnimationSequence, skeleton: Optional[Skeleton] = None) -> None:
        self.stop()
        self.sequence = sequence
        self.skeleton = skeleton
        self.last_frame = {}
        logger.info(f"Loaded '{sequence.name}' ({sequence.duration:.0f}ms, "
                    f"{len(sequence.tracks)} tracks)")

    def _require_sequence(self) -> AnimationSequence:
        if self.sequence is None:
            raise TimelineError("No animation sequence loaded")
        return self.sequence

    def _set_state(self, playing: bool, paused: bool) -> None:
        before = self.playback_state
        self.state.is_playing = playing
        self.state.is_paused = paused
        after = self.playback_state
        if before != after:
            logger.debug(f"{before.value} -> {after.value}")
            self._emit("stateChange", after)

    # -------------------------------------------------------------------------
    # Controls
    # -------------------------------------------------------------------------

    def play(self) -> None:
        self._require_sequence()
        if self.state.is_playing:
            return
        self._cancel()
        self._last_tick = self.scheduler.now()
        self._set_state(playing=True, paused=False)
        self._schedule()
        logger.info(f"▶ play @ {self.state.current_time:.0f}ms")

    def pause(self) -> None:
        if not self.state.is_playing:
            return
        self._cancel()
        self._set_state(playing=False, paused=True)
        logger.info(f"⏸ pause @ {self.state.current_time:.0f}ms")

    def stop(self) -> None:
        self._cancel()
        was_idle = self.playback_state == PlaybackState.STOPPED and self.state.current_time == 0
        self.state.current_time = 0.0
        self._direction = 1
        self._set_state(playing=False, paused=False)
        if self.sequence is not None and not was_idle:
            self._render(0.0)
            logger.info("⏹ stop")

    def seek_to(self, t: float) -> None:
        sequence = self._require_sequence()
        if not isinstance(t, (int, float)) or math.isnan(t):
            raise InvalidInputError(f"Seek time must be a number, got {t!r}")
        self.state.current_time = max(0.0, min(sequence.duration, float(t)))
        self._render(self.state.current_time)

    def set_speed(self, speed: float) -> float:
        if not isinstance(speed, (int, float)) or not math.isfinite(speed):
            raise InvalidInputError(f"Playback speed must be a finite number, got {speed!r}")
        self.state.playback_speed = max(self.min_speed, min(self.max_speed, float(speed)))
        return self.state.playback_speed

    def sample(self, t: float) -> Dict[str, KeyframeProperties]:
        return self.sampler.sample(self._require_sequence(), t, self.skeleton)

    # -------------------------------------------------------------------------
    # Tick loop
    # -------------------------------------------------------------------------

    def _schedule(self) -> None:
        self._handle = self.scheduler.request_frame(self._tick)

    def _cancel(self) -> None:
        if self._handle is not None:
            self.scheduler.cancel_frame(self._handle)
            self._handle = None

    def _tick(self) -> None:
        self._handle = None
        if not self.state.is_playing or self.sequence is None:
            return

        now = self.scheduler.now()
        delta = max(0.0, now - self._last_tick)
        self._last_tick = now

        sequence = self.sequence
        duration = sequence.duration
        current = self.state.current_time + delta * self.state.playback_speed * self._direction

        if sequence.loop and sequence.auto_reverse:
            current = self._ping_pong(current, duration)
        elif sequence.loop:
            if current >= duration:
                current = current % duration
        elif current >= duration:
            self.state.current_time = duration
            self._render(duration)
            if self.state.is_playing:
                self._complete()
            return

        self.state.current_time = current
        self._render(current)
        # Listeners may change playback state during render
        if self.state.is_playing and self._handle is None:
            self._schedule()

    def _ping_pong(self, current: float, duration: float) -> float:
        # Fold overshoot back into range, flipping direction at each edge
        while current > duration or current < 0:
            if current > duration:
                current = 2 * duration - current
                self._direction = -1
            else:
                current = -current
                self._direction = 1
        return current

    def _complete(self) -> None:
        self._cancel()
        self.state.current_time = 0.0
        self._direction = 1
        self._set_state(playing=False, paused=False)
        logger.info(f"✓ '{self.sequence.name}' complete")
        self._emit("complete", self.sequence)

    def _render(self, t: float) -> None:
        # Whole frame is sampled before any listener sees it
        frame = self.sampler.sample(self.sequence, t, self.skeleton)
        self.last_frame = frame
        self._emit("timeUpdate", t)
        self._emit("frame", frame)
