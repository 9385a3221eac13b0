import threading
import time
from typing import Callable

import mujoco
import numpy as np

from cost_residual import compute_residual
from goal_transition import GoalTransitionStateMachine
from observation_filter import ObservationFilter
from task_config import TaskConfig, default_parameters
from task_model import BeliefState, ModelIds, lookup_model_ids


class LeapTask:
    """
    Cube rotation task as seen by the planner host.

    The host registers three callbacks and calls them from its control thread:
    `residual` (cost terms), `transition` (goal/reset logic, once per physics step)
    and `modify_state` (perceived state handed to the optimizer). A display thread
    may read `snapshot()` at any time; everything shared goes through `mutex`.
    """

    def __init__(
        self,
        cfg: TaskConfig,
        model: mujoco.MjModel,
        rng: np.random.Generator | None = None,
        clock: Callable[[], float] = time.monotonic,
        forward: Callable[[mujoco.MjModel, mujoco.MjData], None] = mujoco.mj_forward,
    ):
        self.cfg = cfg
        # Name lookups are validated once here; a mismatched model is fatal.
        self.ids: ModelIds = lookup_model_ids(model)
        if rng is None:
            rng = np.random.default_rng(cfg.seed)
        self.rng = rng
        self.forward = forward
        self.mutex = threading.Lock()
        self.parameters = default_parameters(cfg)
        self.goal_machine = GoalTransitionStateMachine(cfg, self.ids, rng, clock=clock)
        self.observation_filter = ObservationFilter(rng)
        self.observation_filter.pos_cube = model.key_qpos[0, 0:3].copy()
        self.observation_filter.quat_cube = model.key_qpos[0, 3:7].copy()

    @classmethod
    def from_model_path(cls, cfg: TaskConfig, **kwargs) -> tuple["LeapTask", mujoco.MjModel, mujoco.MjData]:
        model = mujoco.MjModel.from_xml_path(str(cfg.model_path))
        data = mujoco.MjData(model)
        return cls(cfg, model, **kwargs), model, data

    @property
    def residual_dim(self) -> int:
        return self.ids.residual_dim

    def residual(self, model: mujoco.MjModel, data: mujoco.MjData, out: np.ndarray | None = None) -> np.ndarray:
        # Reads only model/data; safe to call from planner worker threads without the lock.
        return compute_residual(self.cfg, model, data, out, residual_dim=self.ids.residual_dim)

    def transition(self, model: mujoco.MjModel, data: mujoco.MjData):
        with self.mutex:
            return self.transition_locked(model, data)

    def transition_locked(self, model: mujoco.MjModel, data: mujoco.MjData):
        """Caller must hold `mutex`; it is released only around the forward recomputation."""
        filt = self.observation_filter
        return self.goal_machine.transition_locked(
            model,
            data,
            self.mutex,
            self.parameters,
            filt.pos_cube,
            filt.quat_cube,
            forward=self.forward,
        )

    def modify_state(self, state: BeliefState) -> BeliefState:
        with self.mutex:
            return self.observation_filter.modify_state(state, self.parameters)

    def set_parameter(self, index, value):
        with self.mutex:
            self.parameters[index] = value

    def snapshot(self) -> dict:
        """Consistent copy of counters and telemetry for a display thread."""
        with self.mutex:
            p = self.goal_machine.progress
            return {
                "parameters": self.parameters.copy(),
                "rotation_count": p.rotation_count,
                "best_rotation_count": p.best_rotation_count,
                "time_since_last_rotation": p.time_since_last_rotation,
                "resets": p.resets,
                "last_angle_deg": p.last_angle_deg,
                "quat_noise": self.observation_filter.noise.quat.copy(),
                "pos_noise": self.observation_filter.noise.pos.copy(),
                "lag_buffer_len": len(self.observation_filter.stored_states),
            }
