"""
Goal/reset logic for the cube rotation task.

Each physics step the state machine checks whether the cube reached the goal
orientation (new goal, count a rotation), whether it fell on the floor (teleport
back onto the hand), or whether it stalled (timeout). Only counters and
timestamps persist between steps.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Iterable

import mujoco
import numpy as np

from task_config import (
    P_BEST_ROTATION_COUNT,
    P_DEBUG_CUBE_POS,
    P_ROTATION_COUNT,
    P_SECONDS_PER_ROTATION,
    P_TIME_SINCE_ROTATION,
    TaskConfig,
)
from task_model import ModelIds, contact_geom_pairs, number_or_default, reset_cube_to_keyframe, sensor_by_name


logger = logging.getLogger(__name__)

SQRT_HALF = 0.7071067811865476

# Wrist tilt applied on top of every axis-aligned goal.
WRIST_TILT_QUAT = np.array([0.0, 1.0, 0.0, 0.7], dtype=float) / np.linalg.norm([0.0, 1.0, 0.0, 0.7])

# Which cube face points up.
FACE_QUATS = np.array(
    [
        [1.0, 0.0, 0.0, 0.0],
        [SQRT_HALF, SQRT_HALF, 0.0, 0.0],  # +90 about x
        [0.0, 1.0, 0.0, 0.0],  # 180 about x
        [-SQRT_HALF, SQRT_HALF, 0.0, 0.0],  # 270 about x
        [SQRT_HALF, 0.0, SQRT_HALF, 0.0],  # +90 about y
        [SQRT_HALF, 0.0, -SQRT_HALF, 0.0],  # 270 about y
    ],
    dtype=float,
)

# Rotation about the up axis.
IN_PLANE_QUATS = np.array(
    [
        [1.0, 0.0, 0.0, 0.0],
        [SQRT_HALF, 0.0, 0.0, SQRT_HALF],
        [0.0, 0.0, 0.0, 1.0],
        [-SQRT_HALF, 0.0, 0.0, SQRT_HALF],
    ],
    dtype=float,
)

IDENTITY_QUAT = np.array([1.0, 0.0, 0.0, 0.0], dtype=float)


def canonical_goal(goal_quat: np.ndarray) -> np.ndarray:
    """Copy of the goal quaternion; an all-zero goal (unset marker) becomes identity."""
    goal = np.array(goal_quat, dtype=float)
    if goal[0] == 0.0 and goal[1] == 0.0 and goal[2] == 0.0 and goal[3] == 0.0:
        return IDENTITY_QUAT.copy()
    return goal


def orientation_angle_deg(quat_a: np.ndarray, quat_b: np.ndarray) -> float:
    """Shortest-arc rotation angle between two orientations, in [0, 180] degrees."""
    b_conj = np.zeros(4, dtype=float)
    mujoco.mju_negQuat(b_conj, np.asarray(quat_b, dtype=float))
    q_diff = np.zeros(4, dtype=float)
    mujoco.mju_mulQuat(q_diff, np.asarray(quat_a, dtype=float), b_conj)
    mujoco.mju_normalize4(q_diff)
    if q_diff[0] < 0.0:
        q_diff *= -1.0
    return float(2.0 * math.acos(min(q_diff[0], 1.0)) * 180.0 / math.pi)


def contacts_on_floor(pairs: Iterable[tuple[int, int]], cube_geom: int, floor_geom: int) -> bool:
    for g1, g2 in pairs:
        if (g1 == cube_geom and g2 == floor_geom) or (g2 == cube_geom and g1 == floor_geom):
            return True
    return False


def axis_aligned_goal_quat(face: int, in_plane: int) -> np.ndarray:
    q_goal = np.zeros(4, dtype=float)
    mujoco.mju_mulQuat(q_goal, WRIST_TILT_QUAT, IN_PLANE_QUATS[in_plane])
    q_tmp = q_goal.copy()
    mujoco.mju_mulQuat(q_goal, q_tmp, FACE_QUATS[face])
    mujoco.mju_normalize4(q_goal)
    return q_goal


def sample_axis_aligned_goal(
    rng: np.random.Generator,
    previous: tuple[int, int] | None,
) -> tuple[np.ndarray, tuple[int, int]]:
    """One of the 24 cube orientations, never the same (face, in-plane) pair as `previous`."""
    choice = previous
    while choice is None or choice == previous:
        choice = (int(rng.integers(0, len(FACE_QUATS))), int(rng.integers(0, len(IN_PLANE_QUATS))))
    return axis_aligned_goal_quat(*choice), choice


def random_unit_quat(rng: np.random.Generator) -> np.ndarray:
    a, b, c = rng.uniform(0.0, 1.0, size=3)
    s1 = math.sqrt(1.0 - a)
    s2 = math.sqrt(a)
    return np.array(
        [
            s1 * math.sin(2.0 * math.pi * b),
            s1 * math.cos(2.0 * math.pi * b),
            s2 * math.sin(2.0 * math.pi * c),
            s2 * math.cos(2.0 * math.pi * c),
        ],
        dtype=float,
    )


def sample_free_goal(rng: np.random.Generator, previous_goal: np.ndarray, min_angle_deg: float = 90.0) -> np.ndarray:
    """Uniform random orientation at least `min_angle_deg` away from the previous goal."""
    while True:
        q_goal = random_unit_quat(rng)
        if orientation_angle_deg(q_goal, previous_goal) >= min_angle_deg:
            return q_goal


@dataclass
class RotationProgress:
    rotation_count: int = 0
    best_rotation_count: int = 0
    time_of_last_reset: float = 0.0
    time_of_last_rotation: float = 0.0
    time_since_last_reset: float = 0.0
    time_since_last_rotation: float = 0.0
    last_choice: tuple[int, int] = (0, 0)
    on_floor: bool = False
    change_goal: bool = False
    last_angle_deg: float = 180.0
    resets: int = 0
    last_reset: tuple[str, int, float] | None = None


class GoalTransitionStateMachine:
    """Per-step goal/drop/timeout handling. Call `transition_locked` with `lock` held."""

    def __init__(
        self,
        cfg: TaskConfig,
        ids: ModelIds,
        rng: np.random.Generator,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.cfg = cfg
        self.ids = ids
        self.rng = rng
        self.clock = clock
        now = clock()
        self.progress = RotationProgress(time_of_last_reset=now, time_of_last_rotation=now)

    def axis_aligned(self, model: mujoco.MjModel) -> bool:
        if self.cfg.axis_aligned_goal is not None:
            return bool(self.cfg.axis_aligned_goal)
        return bool(number_or_default(1, model, "axis_aligned_goal"))

    def angle_threshold_deg(self, axis_aligned: bool) -> float:
        return self.cfg.axis_aligned_angle_thresh_deg if axis_aligned else self.cfg.free_angle_thresh_deg

    def sample_goal(self, axis_aligned: bool, previous_goal: np.ndarray) -> np.ndarray:
        p = self.progress
        if axis_aligned:
            q_goal, p.last_choice = sample_axis_aligned_goal(self.rng, p.last_choice)
            return q_goal
        return sample_free_goal(self.rng, previous_goal, self.cfg.free_goal_min_angle_deg)

    def _log_reset(self, on_floor: bool):
        p = self.progress
        timed_out = p.time_since_last_rotation > self.cfg.timeout_s
        if timed_out:
            # Do not count the stalled stretch since the last rotation.
            elapsed = p.time_since_last_reset - p.time_since_last_rotation
        else:
            elapsed = p.time_since_last_reset
        seconds_per_rotation = elapsed / max(float(p.rotation_count), 1.0)
        event = "drop" if on_floor else "timeout"
        logger.info("%s detected, resetting cube.", event.capitalize())
        logger.info("Rotations: %d, seconds per rotation: %.3f", p.rotation_count, seconds_per_rotation)
        p.last_reset = (event, p.rotation_count, seconds_per_rotation)

    def transition_locked(
        self,
        model: mujoco.MjModel,
        data: mujoco.MjData,
        lock: threading.Lock,
        parameters: np.ndarray,
        noisy_cube_pos: np.ndarray,
        noisy_cube_quat: np.ndarray,
        forward: Callable[[mujoco.MjModel, mujoco.MjData], None] = mujoco.mj_forward,
        contacts: Iterable[tuple[int, int]] | None = None,
    ) -> RotationProgress:
        ids = self.ids
        p = self.progress

        cube_orientation = sensor_by_name(model, data, "cube_orientation")
        goal_orientation = canonical_goal(sensor_by_name(model, data, "cube_goal_orientation"))

        angle = orientation_angle_deg(cube_orientation, goal_orientation)
        axis_aligned = self.axis_aligned(model)
        p.last_angle_deg = angle

        change_goal = False
        if angle < self.angle_threshold_deg(axis_aligned):
            change_goal = True
            p.rotation_count += 1
            p.best_rotation_count = max(p.best_rotation_count, p.rotation_count)

        if contacts is None:
            contacts = contact_geom_pairs(data)
        on_floor = contacts_on_floor(contacts, ids.cube_geom_id, ids.floor_geom_id)
        if on_floor:
            reset_cube_to_keyframe(model, data, ids)

        now = self.clock()
        p.time_since_last_reset = now - p.time_of_last_reset
        p.time_since_last_rotation = now - p.time_of_last_rotation

        if on_floor or p.time_since_last_rotation > self.cfg.timeout_s:
            self._log_reset(on_floor)
            p.time_of_last_reset = now
            p.rotation_count = 0
            p.resets += 1
            change_goal = True

        if change_goal:
            p.time_of_last_rotation = now
            q_goal = self.sample_goal(axis_aligned, goal_orientation)
            data.mocap_quat[ids.goal_mocap_id] = q_goal

        p.on_floor = on_floor
        p.change_goal = change_goal

        if on_floor or change_goal:
            # Forward may re-enter task callbacks that take the lock.
            lock.release()
            try:
                forward(model, data)
            finally:
                lock.acquire()

        data.mocap_pos[ids.noisy_cube_mocap_id] = noisy_cube_pos
        data.mocap_quat[ids.noisy_cube_mocap_id] = noisy_cube_quat

        parameters[P_ROTATION_COUNT] = p.rotation_count
        parameters[P_BEST_ROTATION_COUNT] = p.best_rotation_count
        parameters[P_TIME_SINCE_ROTATION] = p.time_since_last_rotation
        parameters[P_SECONDS_PER_ROTATION] = p.time_since_last_reset / max(float(p.rotation_count), 1.0)
        parameters[P_DEBUG_CUBE_POS] = sensor_by_name(model, data, "cube_position")
        return p
