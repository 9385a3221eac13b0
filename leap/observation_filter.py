from collections import deque
from dataclasses import dataclass, field

import mujoco
import numpy as np

from task_config import (
    P_BIAS_POS,
    P_EMA_ALPHA,
    P_LAG_STEPS,
    P_POS_NOISE_MAX,
    P_QUAT_NOISE_MAX,
    P_STD_POS,
    P_STD_ROT,
)
from task_model import CUBE_NQ, CUBE_NV, NUM_HAND_JOINTS, BeliefState


NQ = CUBE_NQ + NUM_HAND_JOINTS
NV = CUBE_NV + NUM_HAND_JOINTS
MIN_DT = 1e-6


@dataclass
class NoiseState:
    """Bounded random walks added to the cube pose estimate. Never reset."""

    quat: np.ndarray = field(default_factory=lambda: np.zeros(3, dtype=float))
    pos: np.ndarray = field(default_factory=lambda: np.zeros(3, dtype=float))


def clamped_walk_step(walk: np.ndarray, increment: np.ndarray, limit: float) -> np.ndarray:
    """walk += increment, then clamp every component to [-limit, limit] (in place)."""
    limit = max(float(limit), 0.0)
    walk += increment
    np.clip(walk, -limit, limit, out=walk)
    return walk


def quat_finite_difference_omega(quat: np.ndarray, quat_last: np.ndarray, dt: float) -> np.ndarray:
    """Angular velocity from two consecutive orientation samples taken dt apart."""
    q = quat
    p = quat_last
    return (2.0 / dt) * np.array(
        [
            q[1] * p[0] - q[0] * p[1] - q[3] * p[2] + q[2] * p[3],
            q[2] * p[0] + q[3] * p[1] - q[0] * p[2] - q[1] * p[3],
            q[3] * p[0] - q[2] * p[1] + q[1] * p[2] - q[0] * p[3],
        ],
        dtype=float,
    )


class ObservationFilter:
    """
    Turns the true simulator state into what a real perception stack would report:
    - cube pose with bounded random-walk noise (tangent-space for orientation),
    - finite-difference velocities smoothed by a one-pole EMA,
    - an optional fixed lag of `lag_steps` control steps.
    """

    def __init__(self, rng: np.random.Generator):
        self.rng = rng
        self.noise = NoiseState()
        self.velocity = np.zeros(NV, dtype=float)
        self.last_qpos = np.zeros(NQ, dtype=float)
        self.last_time = 0.0
        self.first_time = True
        self.stored_states: deque[np.ndarray] = deque()
        # Emitted (possibly lagged) noisy cube pose, mirrored onto the marker by the transition.
        self.pos_cube = np.zeros(3, dtype=float)
        self.quat_cube = np.array([1.0, 0.0, 0.0, 0.0], dtype=float)

    def _noisy_cube_pose(self, qpos: np.ndarray, parameters: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        std_rot = max(float(parameters[P_STD_ROT]), 0.0)
        std_pos = max(float(parameters[P_STD_POS]), 0.0)

        dv = self.rng.normal(0.0, std_rot, size=3)
        clamped_walk_step(self.noise.quat, dv, parameters[P_QUAT_NOISE_MAX])
        quat_cube = np.array(qpos[3:7], dtype=float)
        mujoco.mju_quatIntegrate(quat_cube, self.noise.quat, 1.0)
        mujoco.mju_normalize4(quat_cube)

        dp = np.asarray(parameters[P_BIAS_POS], dtype=float) + self.rng.normal(0.0, std_pos, size=3)
        clamped_walk_step(self.noise.pos, dp, parameters[P_POS_NOISE_MAX])
        pos_cube = np.array(qpos[0:3], dtype=float) + self.noise.pos
        return pos_cube, quat_cube

    def _filtered_velocity(self, t: float, noisy_qpos: np.ndarray, alpha: float) -> np.ndarray:
        dt = t - self.last_time
        ds = np.zeros(NV, dtype=float)
        if self.first_time or dt < MIN_DT:
            self.first_time = False
        else:
            omega = quat_finite_difference_omega(noisy_qpos[3:7], self.last_qpos[3:7], dt)
            ds[0:3] = (noisy_qpos[0:3] - self.last_qpos[0:3]) / dt
            ds[3:6] = omega
            ds[CUBE_NV:] = (noisy_qpos[CUBE_NQ:] - self.last_qpos[CUBE_NQ:]) / dt
            ds *= alpha
        # v_ema(t) = alpha * v(t) + (1 - alpha) * v_ema(t - 1)
        ds += (1.0 - alpha) * self.velocity
        return ds

    def modify_state(self, state: BeliefState, parameters: np.ndarray) -> BeliefState:
        """Replace state.qpos/qvel in place with the noisy, filtered, lagged estimate."""
        alpha = float(np.clip(parameters[P_EMA_ALPHA], 0.0, 1.0))
        lag_steps = max(int(round(float(parameters[P_LAG_STEPS]))), 0)
        while len(self.stored_states) > lag_steps:
            self.stored_states.popleft()

        qpos = np.asarray(state.qpos, dtype=float)
        pos_cube, quat_cube = self._noisy_cube_pose(qpos, parameters)

        noisy_qpos = qpos.copy()
        noisy_qpos[0:3] = pos_cube
        noisy_qpos[3:7] = quat_cube

        t = float(state.time)
        velocity = self._filtered_velocity(t, noisy_qpos, alpha)

        self.last_time = t
        self.last_qpos = noisy_qpos
        self.velocity = velocity

        state_new = np.concatenate([noisy_qpos, velocity])
        state_lagged = state_new
        if lag_steps > 0 and len(self.stored_states) >= lag_steps:
            state_lagged = self.stored_states.popleft()
        if lag_steps > 0:
            self.stored_states.append(state_new)

        state.set_position(state_lagged[:NQ])
        state.set_velocity(state_lagged[NQ:])

        self.pos_cube = state_lagged[0:3].copy()
        self.quat_cube = state_lagged[3:7].copy()
        return state
