import unittest
from pathlib import Path

import mujoco
import numpy as np

from cost_residual import compute_residual, orientation_residual, workspace_closest_point, workspace_residual
from task_config import build_config, parse_args
from task_model import lookup_model_ids, reset_to_keyframe, residual_dimension


XML_PATH = Path(__file__).with_name("task.xml")

# Offsets into the residual vector for the task model (nu = 16).
R_POSITION = 0
R_ORIENTATION = slice(1, 4)
R_LINEAR_VELOCITY = slice(4, 7)
R_ANGULAR_VELOCITY = slice(7, 10)
R_CONTROL = slice(10, 26)
R_NOMINAL_POSE = slice(26, 42)
R_JOINT_VELOCITY = slice(42, 58)


class WorkspaceTests(unittest.TestCase):
    def setUp(self):
        self.cfg = build_config(parse_args(["--status-every-s", "0"]))

    def test_inside_tube_has_zero_violation(self):
        for position in ([0.11, 0.0, 0.05], [0.08, -0.02, -0.015], [0.14, 0.02, 1.0]):
            self.assertEqual(workspace_residual(self.cfg, np.array(position)), 0.0)

    def test_below_floor_inside_tube(self):
        position = np.array([0.1, 0.0, -0.05])
        np.testing.assert_allclose(workspace_closest_point(self.cfg, position), [0.1, 0.0, -0.015])
        self.assertAlmostEqual(workspace_residual(self.cfg, position), 8.75, places=9)

    def test_outside_tube_clamps_to_tilted_palm_band(self):
        position = np.array([0.2, 0.05, 0.5])
        theta = np.radians(20.0)
        z_min = -0.2 * np.tan(theta) + 0.035 / np.cos(theta)
        expected = np.array([0.14, 0.02, z_min + 0.035])
        np.testing.assert_allclose(workspace_closest_point(self.cfg, position), expected, atol=1e-12)
        self.assertAlmostEqual(
            workspace_residual(self.cfg, position),
            250.0 * float(np.linalg.norm(expected - position)),
            places=9,
        )

    def test_outside_tube_below_band_lifts_to_z_min(self):
        position = np.array([0.05, 0.0, -0.2])
        theta = np.radians(20.0)
        z_min = -0.05 * np.tan(theta) + 0.035 / np.cos(theta)
        np.testing.assert_allclose(workspace_closest_point(self.cfg, position), [0.08, 0.0, z_min], atol=1e-12)

    def test_violation_is_nonnegative_and_grows_with_distance(self):
        previous = 0.0
        for z in (-0.02, -0.05, -0.1, -0.2):
            value = workspace_residual(self.cfg, np.array([0.11, 0.0, z]))
            self.assertGreater(value, previous)
            previous = value


class OrientationTermTests(unittest.TestCase):
    def test_matching_orientations_give_zero(self):
        q = np.array([0.5, 0.5, -0.5, 0.5])
        np.testing.assert_allclose(orientation_residual(q, q), np.zeros(3), atol=1e-12)

    def test_unnormalized_goal_is_normalized_first(self):
        q = np.array([np.cos(0.2), 0.0, np.sin(0.2), 0.0])
        np.testing.assert_allclose(orientation_residual(3.0 * q, q), np.zeros(3), atol=1e-12)

    def test_goal_quaternion_is_not_modified(self):
        goal = np.array([2.0, 0.0, 0.0, 0.0])
        orientation_residual(goal, np.array([1.0, 0.0, 0.0, 0.0]))
        np.testing.assert_array_equal(goal, [2.0, 0.0, 0.0, 0.0])


class ComputeResidualTests(unittest.TestCase):
    def setUp(self):
        self.cfg = build_config(parse_args(["--status-every-s", "0"]))
        self.model = mujoco.MjModel.from_xml_path(str(XML_PATH))
        self.data = mujoco.MjData(self.model)
        reset_to_keyframe(self.model, self.data)

    def test_dimension_comes_from_user_sensors(self):
        self.assertEqual(residual_dimension(self.model), 58)
        self.assertEqual(lookup_model_ids(self.model).residual_dim, 58)
        self.assertEqual(compute_residual(self.cfg, self.model, self.data).shape, (58,))

    def test_keyframe_at_rest_has_zero_residual(self):
        residual = compute_residual(self.cfg, self.model, self.data)
        np.testing.assert_allclose(residual, np.zeros(58), atol=1e-9)

    def test_fills_caller_buffer(self):
        out = np.full(58, np.nan)
        result = compute_residual(self.cfg, self.model, self.data, out)
        self.assertIs(result, out)
        self.assertFalse(np.any(np.isnan(out)))

    def test_orientation_term_points_from_cube_to_goal(self):
        ids = lookup_model_ids(self.model)
        half = np.pi / 4.0
        self.data.mocap_quat[ids.goal_mocap_id] = [np.cos(half), 0.0, 0.0, np.sin(half)]
        mujoco.mj_forward(self.model, self.data)
        residual = compute_residual(self.cfg, self.model, self.data)
        np.testing.assert_allclose(residual[R_ORIENTATION], [0.0, 0.0, np.pi / 2.0], atol=1e-9)

    def test_velocity_terms_follow_sensors(self):
        self.data.qvel[0:3] = [0.1, -0.2, 0.3]
        self.data.qvel[3:6] = [0.0, 0.5, 0.0]
        self.data.qvel[6:] = np.linspace(-0.8, 0.7, 16)
        mujoco.mj_forward(self.model, self.data)
        residual = compute_residual(self.cfg, self.model, self.data)
        np.testing.assert_allclose(residual[R_LINEAR_VELOCITY], [0.1, -0.2, 0.3], atol=1e-9)
        np.testing.assert_allclose(residual[R_ANGULAR_VELOCITY], [0.0, 0.5, 0.0], atol=1e-9)
        np.testing.assert_allclose(residual[R_JOINT_VELOCITY], np.linspace(-0.8, 0.7, 16), atol=1e-12)

    def test_pose_deviation_and_control_terms(self):
        self.data.qpos[7 + 5] += 0.2
        mujoco.mj_forward(self.model, self.data)
        residual = compute_residual(self.cfg, self.model, self.data)
        expected_pose = np.zeros(16)
        expected_pose[5] = 0.2
        np.testing.assert_allclose(residual[R_NOMINAL_POSE], expected_pose, atol=1e-12)
        np.testing.assert_allclose(residual[R_CONTROL], self.data.actuator_force, atol=1e-12)
        self.assertLess(residual[R_CONTROL][5], 0.0)

    def test_dropped_cube_raises_position_term(self):
        self.data.qpos[2] = -0.05
        mujoco.mj_forward(self.model, self.data)
        residual = compute_residual(self.cfg, self.model, self.data)
        self.assertAlmostEqual(residual[R_POSITION], 250.0 * 0.035, places=9)

    def test_sensor_data_is_not_modified(self):
        self.data.qvel[0:6] = [0.1, 0.2, 0.3, 0.4, 0.5, 0.6]
        mujoco.mj_forward(self.model, self.data)
        before = self.data.sensordata.copy()
        qpos_before = self.data.qpos.copy()
        compute_residual(self.cfg, self.model, self.data)
        np.testing.assert_array_equal(self.data.sensordata, before)
        np.testing.assert_array_equal(self.data.qpos, qpos_before)

    def test_declared_dimension_mismatch_is_fatal(self):
        with self.assertRaises(RuntimeError):
            compute_residual(self.cfg, self.model, self.data, residual_dim=57)

    def test_wrong_buffer_length_is_fatal(self):
        with self.assertRaises(RuntimeError):
            compute_residual(self.cfg, self.model, self.data, np.zeros(10))


if __name__ == "__main__":
    unittest.main()
