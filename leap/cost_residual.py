"""
Residual terms for the cube rotation cost.

Layout (must sum to the model's declared user-sensor dimension):
    cube position        (1)   workspace tube violation
    cube orientation     (3)
    cube linear velocity (3)
    cube angular velocity(3)
    control              (nu)
    nominal pose         (16)
    joint velocity       (16)
"""

import mujoco
import numpy as np

from task_config import TaskConfig
from task_model import CUBE_NQ, CUBE_NV, NUM_HAND_JOINTS, residual_dimension, sensor_by_name


def workspace_closest_point(cfg: TaskConfig, position: np.ndarray) -> np.ndarray:
    """Closest point to `position` inside the preferred cube workspace."""
    x, y, z = (float(v) for v in position)
    x_closest = max(cfg.tube_x_min, min(x, cfg.tube_x_max))
    y_closest = max(cfg.tube_y_min, min(y, cfg.tube_y_max))

    outside_tube = x < cfg.tube_x_min or x > cfg.tube_x_max or y < cfg.tube_y_min or y > cfg.tube_y_max
    if outside_tube:
        # Cube centre height when resting flat on the tilted palm, plus some slack upward.
        theta = cfg.palm_tilt_rad
        z_min = -x * np.tan(theta) + cfg.palm_clearance_m / np.cos(theta)
        z_max = z_min + cfg.palm_clearance_m
        z_closest = max(z_min, min(z, z_max))
    else:
        z_closest = max(cfg.tube_floor_z, z)
    return np.array([x_closest, y_closest, z_closest], dtype=float)


def workspace_residual(cfg: TaskConfig, position: np.ndarray) -> float:
    # Linear in the violation distance; the optimizer applies its own norm on top.
    dist = np.linalg.norm(workspace_closest_point(cfg, position) - np.asarray(position, dtype=float))
    return float(cfg.workspace_slope * dist)


def orientation_residual(goal_quat: np.ndarray, cube_quat: np.ndarray) -> np.ndarray:
    goal = np.array(goal_quat, dtype=float)
    mujoco.mju_normalize4(goal)
    err = np.zeros(3, dtype=float)
    mujoco.mju_subQuat(err, goal, np.asarray(cube_quat, dtype=float))
    return err


def compute_residual(
    cfg: TaskConfig,
    model: mujoco.MjModel,
    data: mujoco.MjData,
    residual: np.ndarray | None = None,
    residual_dim: int | None = None,
) -> np.ndarray:
    """Fill `residual` from the current sensors. Length mismatch with the model is fatal."""
    if residual_dim is None:
        residual_dim = residual_dimension(model)
    expected = 1 + 3 + 3 + 3 + model.nu + NUM_HAND_JOINTS + NUM_HAND_JOINTS
    if expected != residual_dim:
        raise RuntimeError(f"Residual terms need {expected} entries but the model declares {residual_dim}.")
    if residual is None:
        residual = np.zeros(residual_dim, dtype=float)
    if residual.shape[0] != residual_dim:
        raise RuntimeError(
            f"Residual buffer has {residual.shape[0]} entries but the model declares {residual_dim}."
        )

    counter = 0

    # ---------- Cube position ----------
    residual[counter] = workspace_residual(cfg, sensor_by_name(model, data, "cube_position"))
    counter += 1

    # ---------- Cube orientation ----------
    cube_orientation = sensor_by_name(model, data, "cube_orientation")
    goal_orientation = sensor_by_name(model, data, "cube_goal_orientation")
    residual[counter : counter + 3] = orientation_residual(goal_orientation, cube_orientation)
    counter += 3

    # ---------- Cube linear velocity ----------
    residual[counter : counter + 3] = sensor_by_name(model, data, "cube_linear_velocity")
    counter += 3

    # ---------- Cube angular velocity ----------
    residual[counter : counter + 3] = sensor_by_name(model, data, "cube_angular_velocity")
    counter += 3

    # ---------- Control ----------
    residual[counter : counter + model.nu] = data.actuator_force
    counter += model.nu

    # ---------- Nominal pose ----------
    joints = slice(CUBE_NQ, CUBE_NQ + NUM_HAND_JOINTS)
    residual[counter : counter + NUM_HAND_JOINTS] = data.qpos[joints] - model.key_qpos[0, joints]
    counter += NUM_HAND_JOINTS

    # ---------- Joint velocity ----------
    residual[counter : counter + NUM_HAND_JOINTS] = data.qvel[CUBE_NV : CUBE_NV + NUM_HAND_JOINTS]
    counter += NUM_HAND_JOINTS

    if counter != residual_dim:
        raise RuntimeError(f"Residual terms fill {counter} entries but the model declares {residual_dim}.")
    return residual
