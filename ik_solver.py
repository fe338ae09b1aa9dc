"""
Inverse Kinematics Solver.
Analytic two-bone IK in the image plane, driven by the IKConstraint
descriptors the skeleton builder attaches to wing chains.
"""

from __future__ import annotations
import math
from dataclasses import dataclass, field, replace
from typing import Dict, Tuple
import logging

from animation_engine import Skeleton, IKConstraint, InvalidInputError

logger = logging.getLogger("SymbolRigger.IK")
logger.setLevel(logging.INFO)
if not logger.handlers:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(
        '\033[34m\033[1mIK\033[0m: \033[34m%(message)s\033[0m'
    ))
    logger.addHandler(handler)

Vector2 = Tuple[float, float]

# Keeps acos() away from the fully stretched / folded singularities
REACH_EPSILON = 1e-3


def solve_two_bone(root: Vector2, len_1: float, len_2: float, target: Vector2,
                   bend_direction: int = 1) -> Tuple[float, float, bool]:
    """
    Angles for a planar 2-bone chain reaching for `target`.

    Law of cosines:
    c^2 = a^2 + b^2 - 2ab cos(C)

    Returns:
        tuple: (bone 1 world angle, bone 2 angle relative to bone 1, reachable)
    """
    if len_1 <= 0 or len_2 <= 0:
        raise InvalidInputError(f"IK bone lengths must be > 0, got {len_1}, {len_2}")

    dx = target[0] - root[0]
    dy = target[1] - root[1]
    dist = math.hypot(dx, dy)

    # Clamp distance into the reachable annulus
    max_reach = len_1 + len_2 - REACH_EPSILON
    min_reach = abs(len_1 - len_2) + REACH_EPSILON
    reachable = min_reach <= dist <= max_reach
    dist = max(min_reach, min(max_reach, dist))

    cos_inner = (len_1 ** 2 + len_2 ** 2 - dist ** 2) / (2 * len_1 * len_2)
    inner = math.acos(max(-1.0, min(1.0, cos_inner)))

    cos_alpha = (len_1 ** 2 + dist ** 2 - len_2 ** 2) / (2 * len_1 * dist)
    alpha = math.acos(max(-1.0, min(1.0, cos_alpha)))

    base = math.atan2(dy, dx)
    angle_1 = base - bend_direction * alpha
    angle_2 = bend_direction * (math.pi - inner)
    return angle_1, angle_2, reachable


def chain_end(root: Vector2, len_1: float, len_2: float,
              angle_1: float, angle_2: float) -> Vector2:
    """Forward kinematics: end effector of a 2-bone chain"""
    jx = root[0] + len_1 * math.cos(angle_1)
    jy = root[1] + len_1 * math.sin(angle_1)
    return (jx + len_2 * math.cos(angle_1 + angle_2),
            jy + len_2 * math.sin(angle_1 + angle_2))


@dataclass
class IKSolution:
    constraint_id: str
    rotations: Dict[str, float] = field(default_factory=dict)
    end_effector: Vector2 = (0.0, 0.0)
    reachable: bool = True


class IKSolver:
    """Applies solve_two_bone to a skeleton's IK chain, honouring mix and limits"""

    def solve(self, skeleton: Skeleton, constraint: IKConstraint, target: Vector2,
              apply: bool = False) -> IKSolution:
        if len(constraint.bones) != 2:
            raise InvalidInputError(
                f"IK '{constraint.id}' has {len(constraint.bones)} bones; only 2-bone chains are solved")
        if not all(math.isfinite(v) for v in target):
            raise InvalidInputError(f"IK target must be finite, got {target}")

        first = skeleton.get_bone(constraint.bones[0])
        second = skeleton.get_bone(constraint.bones[1])

        # Rest orientation: straight chain from the first joint through the second
        ox, oy = first.original_transform.x, first.original_transform.y
        sx, sy = second.original_transform.x, second.original_transform.y
        rest = math.atan2(sy - oy, sx - ox) if (sx, sy) != (ox, oy) else 0.0

        angle_1, angle_2, reachable = solve_two_bone(
            (first.transform.x, first.transform.y),
            first.length, second.length, target, constraint.bend_direction)

        solved = {first.id: _wrap_angle(angle_1 - rest), second.id: _wrap_angle(angle_2)}

        rotations = {}
        for bone in (first, second):
            current = bone.transform.rotation
            blended = current + (solved[bone.id] - current) * constraint.mix
            rotations[bone.id] = bone.constraints.clamp_rotation(blended)

        end = chain_end((first.transform.x, first.transform.y), first.length, second.length,
                        rotations[first.id] + rest, rotations[second.id])

        if apply:
            for bone_id, rotation in rotations.items():
                bone = skeleton.bones[bone_id]
                bone.transform = replace(bone.transform, rotation=rotation)

        logger.debug(f"{constraint.id}: target={target} reachable={reachable} "
                     f"rotations={rotations}")
        return IKSolution(
            constraint_id=constraint.id,
            rotations=rotations,
            end_effector=end,
            reachable=reachable,
        )


def _wrap_angle(angle: float) -> float:
    return (angle + math.pi) % (2 * math.pi) - math.pi
