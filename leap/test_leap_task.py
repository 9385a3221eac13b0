import dataclasses
import threading
import unittest
from pathlib import Path

import mujoco
import numpy as np

from cost_residual import compute_residual
from leap_task import LeapTask
from task_config import P_LAG_STEPS, P_ROTATION_COUNT, P_STD_POS, P_STD_ROT, build_config, parse_args
from task_model import BeliefState, hold_pose_ctrl, reset_to_keyframe


XML_PATH = Path(__file__).with_name("task.xml")


class FakeClock:
    def __init__(self, t: float = 0.0):
        self.t = t

    def __call__(self) -> float:
        return self.t


def make_config(*argv):
    return build_config(parse_args(["--status-every-s", "0", "--seed", "11", *argv]))


def control_step(task: LeapTask, model, data, ctrl):
    residual = task.residual(model, data)
    task.transition(model, data)
    belief = BeliefState.from_data(data)
    task.modify_state(belief)
    data.ctrl[:] = ctrl
    mujoco.mj_step(model, data)
    return residual, belief


class LeapTaskTests(unittest.TestCase):
    def setUp(self):
        self.clock = FakeClock(0.0)

    def _task(self, cfg=None, **kwargs):
        cfg = cfg or make_config()
        kwargs.setdefault("clock", self.clock)
        task, model, data = LeapTask.from_model_path(cfg, **kwargs)
        reset_to_keyframe(model, data)
        return task, model, data

    def test_from_model_path_loads_task_model(self):
        task, model, _ = self._task()
        self.assertEqual(model.nq, 23)
        self.assertEqual(model.nv, 22)
        self.assertEqual(task.residual_dim, 58)
        np.testing.assert_allclose(task.observation_filter.pos_cube, model.key_qpos[0, 0:3])

    def test_mismatched_model_is_rejected(self):
        model = mujoco.MjModel.from_xml_string(
            """
            <mujoco>
              <worldbody>
                <geom name="floor" type="plane" size="1 1 0.1"/>
                <body name="cube" pos="0 0 0.1">
                  <freejoint/>
                  <geom name="cube" type="box" size="0.02 0.02 0.02"/>
                </body>
              </worldbody>
            </mujoco>
            """
        )
        with self.assertRaises(ValueError):
            LeapTask(make_config(), model)

    def test_residual_matches_direct_computation(self):
        task, model, data = self._task()
        data.qvel[0:3] = [0.05, 0.0, -0.02]
        mujoco.mj_forward(model, data)
        np.testing.assert_array_equal(task.residual(model, data), compute_residual(task.cfg, model, data))

    def test_closed_loop_run_keeps_invariants(self):
        task, model, data = self._task()
        ctrl = hold_pose_ctrl(model)
        lag_steps = int(task.parameters[P_LAG_STEPS])
        self.assertEqual(lag_steps, 2)

        for step in range(300):
            self.clock.t += model.opt.timestep
            noisy_pos = task.observation_filter.pos_cube.copy()
            residual, belief = control_step(task, model, data, ctrl)

            self.assertEqual(residual.shape, (58,))
            self.assertTrue(np.all(np.isfinite(residual)))
            self.assertTrue(np.all(np.isfinite(belief.qpos)))
            self.assertTrue(np.all(np.isfinite(belief.qvel)))
            self.assertAlmostEqual(float(np.linalg.norm(belief.qpos[3:7])), 1.0, places=9)
            self.assertLessEqual(len(task.observation_filter.stored_states), lag_steps)
            np.testing.assert_allclose(data.mocap_pos[task.ids.noisy_cube_mocap_id], noisy_pos)

            snap = task.snapshot()
            self.assertGreaterEqual(snap["best_rotation_count"], snap["rotation_count"])
            self.assertEqual(snap["parameters"][P_ROTATION_COUNT], snap["rotation_count"])
            self.assertTrue(np.all(np.abs(snap["quat_noise"]) <= task.cfg.quat_noise_max))
            self.assertTrue(np.all(np.abs(snap["pos_noise"]) <= task.cfg.pos_noise_max))
            if step == 0:
                # Goal marker starts at the cube's keyframe orientation.
                self.assertEqual(snap["rotation_count"], 1)

        self.assertEqual(task.snapshot()["resets"], 0)

    def test_same_seed_reproduces_goals_and_noise(self):
        runs = []
        for _ in range(2):
            task, model, data = self._task()
            ctrl = hold_pose_ctrl(model)
            beliefs = [control_step(task, model, data, ctrl)[1] for _ in range(20)]
            runs.append(
                (
                    data.mocap_quat[task.ids.goal_mocap_id].copy(),
                    np.concatenate([b.qpos for b in beliefs]),
                )
            )
        np.testing.assert_array_equal(runs[0][0], runs[1][0])
        np.testing.assert_array_equal(runs[0][1], runs[1][1])

    def test_dropped_cube_is_put_back(self):
        task, model, data = self._task()
        control_step(task, model, data, hold_pose_ctrl(model))
        floor_z = float(model.geom_pos[task.ids.floor_geom_id, 2])
        data.qpos[0:3] = [0.3, 0.0, floor_z + 0.033]
        mujoco.mj_forward(model, data)

        with self.assertLogs("goal_transition", level="INFO"):
            task.transition(model, data)

        np.testing.assert_allclose(data.qpos[0:7], model.key_qpos[0, 0:7])
        snap = task.snapshot()
        self.assertEqual(snap["resets"], 1)
        self.assertEqual(snap["rotation_count"], 0)
        self.assertEqual(snap["best_rotation_count"], 1)

    def test_forward_may_reenter_task_lock(self):
        holder = {}

        def forward(model, data):
            holder["snapshot"] = holder["task"].snapshot()
            mujoco.mj_forward(model, data)

        task, model, data = self._task(forward=forward)
        holder["task"] = task
        task.transition(model, data)
        self.assertIn("snapshot", holder)
        self.assertFalse(task.mutex.locked())

    def test_parameters_drive_filter(self):
        cfg = dataclasses.replace(make_config(), lag_steps=0)
        task, model, data = self._task(cfg)
        task.set_parameter(P_STD_ROT, 0.0)
        task.set_parameter(P_STD_POS, 0.0)
        belief = BeliefState.from_data(data)
        task.modify_state(belief)
        np.testing.assert_allclose(belief.qpos, data.qpos, atol=1e-12)
        self.assertEqual(task.snapshot()["lag_buffer_len"], 0)

    def test_snapshot_is_safe_from_another_thread(self):
        task, model, data = self._task()
        ctrl = hold_pose_ctrl(model)
        stop = threading.Event()
        errors = []
        reads = []

        def reader():
            while True:
                try:
                    snap = task.snapshot()
                    if snap["best_rotation_count"] < snap["rotation_count"]:
                        errors.append("best below current")
                    reads.append(snap["rotation_count"])
                except Exception as exc:
                    errors.append(repr(exc))
                if stop.is_set():
                    break

        thread = threading.Thread(target=reader, daemon=True)
        thread.start()
        try:
            for _ in range(200):
                control_step(task, model, data, ctrl)
        finally:
            stop.set()
            thread.join(timeout=5.0)

        self.assertFalse(thread.is_alive())
        self.assertEqual(errors, [])
        self.assertGreater(len(reads), 0)


if __name__ == "__main__":
    unittest.main()
