from dataclasses import dataclass

import mujoco
import numpy as np


CUBE_SENSORS = (
    "cube_position",
    "cube_orientation",
    "cube_goal_orientation",
    "cube_linear_velocity",
    "cube_angular_velocity",
)
NUM_HAND_JOINTS = 16
CUBE_NQ = 7
CUBE_NV = 6


@dataclass(frozen=True)
class ModelIds:
    cube_body_id: int
    cube_geom_id: int
    floor_geom_id: int
    goal_body_id: int
    goal_mocap_id: int
    noisy_cube_body_id: int
    noisy_cube_mocap_id: int
    cube_qpos_adr: int
    cube_dof_adr: int
    residual_dim: int


def _require(object_id: int, kind: str, name: str, missing: list[str]) -> int:
    if object_id < 0:
        missing.append(f"{kind} '{name}'")
    return int(object_id)


def lookup_model_ids(model: mujoco.MjModel) -> ModelIds:
    """Resolve every named object the task touches. Raises ValueError on a mismatched model."""

    def bid(name):
        return mujoco.mj_name2id(model, mujoco.mjtObj.mjOBJ_BODY, name)

    def gid(name):
        return mujoco.mj_name2id(model, mujoco.mjtObj.mjOBJ_GEOM, name)

    missing: list[str] = []
    cube_body_id = _require(bid("cube"), "body", "cube", missing)
    cube_geom_id = _require(gid("cube"), "geom", "cube", missing)
    floor_geom_id = _require(gid("floor"), "geom", "floor", missing)
    goal_body_id = _require(bid("goal"), "body", "goal", missing)
    noisy_cube_body_id = _require(bid("cube_noisy"), "body", "cube_noisy", missing)
    for name in CUBE_SENSORS:
        _require(mujoco.mj_name2id(model, mujoco.mjtObj.mjOBJ_SENSOR, name), "sensor", name, missing)
    if missing:
        raise ValueError(f"Task model is missing required objects: {', '.join(missing)}.")

    goal_mocap_id = int(model.body_mocapid[goal_body_id])
    noisy_cube_mocap_id = int(model.body_mocapid[noisy_cube_body_id])
    if goal_mocap_id < 0 or noisy_cube_mocap_id < 0:
        raise ValueError("Bodies 'goal' and 'cube_noisy' must be mocap bodies.")

    jnt_cube = int(model.body_jntadr[cube_body_id])
    if jnt_cube < 0 or model.jnt_type[jnt_cube] != mujoco.mjtJoint.mjJNT_FREE:
        raise ValueError("Body 'cube' must be attached to the world by a free joint.")
    cube_qpos_adr = int(model.jnt_qposadr[jnt_cube])
    cube_dof_adr = int(model.jnt_dofadr[jnt_cube])
    if cube_qpos_adr != 0 or cube_dof_adr != 0:
        raise ValueError("The cube free joint must come first in qpos/qvel.")
    if model.nq != CUBE_NQ + NUM_HAND_JOINTS or model.nv != CUBE_NV + NUM_HAND_JOINTS:
        raise ValueError(
            f"Expected nq={CUBE_NQ + NUM_HAND_JOINTS}, nv={CUBE_NV + NUM_HAND_JOINTS}; "
            f"got nq={model.nq}, nv={model.nv}."
        )
    if model.nkey < 1:
        raise ValueError("Task model needs a reference keyframe.")

    return ModelIds(
        cube_body_id=cube_body_id,
        cube_geom_id=cube_geom_id,
        floor_geom_id=floor_geom_id,
        goal_body_id=goal_body_id,
        goal_mocap_id=goal_mocap_id,
        noisy_cube_body_id=noisy_cube_body_id,
        noisy_cube_mocap_id=noisy_cube_mocap_id,
        cube_qpos_adr=cube_qpos_adr,
        cube_dof_adr=cube_dof_adr,
        residual_dim=residual_dimension(model),
    )


def residual_dimension(model: mujoco.MjModel) -> int:
    """Residual size declared by the model: total dimension of its user sensors."""
    user = model.sensor_type == mujoco.mjtSensor.mjSENS_USER
    return int(np.sum(model.sensor_dim[user]))


def sensor_by_name(model: mujoco.MjModel, data: mujoco.MjData, name: str) -> np.ndarray:
    """View into data.sensordata for a named sensor."""
    sid = mujoco.mj_name2id(model, mujoco.mjtObj.mjOBJ_SENSOR, name)
    if sid < 0:
        raise ValueError(f"Unknown sensor '{name}'.")
    adr = int(model.sensor_adr[sid])
    return data.sensordata[adr : adr + int(model.sensor_dim[sid])]


def number_or_default(default: float, model: mujoco.MjModel, name: str) -> float:
    """First value of a custom <numeric> field, or default when the model has none."""
    nid = mujoco.mj_name2id(model, mujoco.mjtObj.mjOBJ_NUMERIC, name)
    if nid < 0 or model.numeric_size[nid] < 1:
        return float(default)
    return float(model.numeric_data[model.numeric_adr[nid]])


def contact_geom_pairs(data: mujoco.MjData) -> list[tuple[int, int]]:
    ncon = int(data.ncon)
    if ncon == 0:
        return []
    geom1 = data.contact.geom1[:ncon]
    geom2 = data.contact.geom2[:ncon]
    return [(int(g1), int(g2)) for g1, g2 in zip(geom1, geom2)]


def reset_cube_to_keyframe(model: mujoco.MjModel, data: mujoco.MjData, ids: ModelIds, key: int = 0):
    """Teleport the cube free joint back to the reference keyframe pose, at rest."""
    q0 = ids.cube_qpos_adr
    v0 = ids.cube_dof_adr
    data.qpos[q0 : q0 + CUBE_NQ] = model.key_qpos[key, q0 : q0 + CUBE_NQ]
    data.qvel[v0 : v0 + CUBE_NV] = 0.0


def reset_to_keyframe(model: mujoco.MjModel, data: mujoco.MjData, key: int = 0):
    """Full episode start: keyframe qpos/qvel/mocap, hand actuators targeting the keyframe pose."""
    mujoco.mj_resetDataKeyframe(model, data, key)
    data.ctrl[:] = hold_pose_ctrl(model, key)
    mujoco.mj_forward(model, data)


def hold_pose_ctrl(model: mujoco.MjModel, key: int = 0) -> np.ndarray:
    """Position-actuator targets that hold the keyframe hand pose."""
    ctrl = np.zeros(model.nu, dtype=float)
    for aid in range(model.nu):
        jid = int(model.actuator_trnid[aid, 0])
        ctrl[aid] = model.key_qpos[key, model.jnt_qposadr[jid]]
    lo = model.actuator_ctrlrange[:, 0]
    hi = model.actuator_ctrlrange[:, 1]
    limited = model.actuator_ctrllimited.astype(bool)
    ctrl[limited] = np.clip(ctrl[limited], lo[limited], hi[limited])
    return ctrl


@dataclass
class BeliefState:
    """Planner-side state: what the optimizer believes qpos/qvel are at `time`."""

    time: float
    qpos: np.ndarray
    qvel: np.ndarray

    @classmethod
    def from_data(cls, data: mujoco.MjData) -> "BeliefState":
        return cls(time=float(data.time), qpos=data.qpos.copy(), qvel=data.qvel.copy())

    def set_position(self, qpos: np.ndarray):
        self.qpos[:] = qpos

    def set_velocity(self, qvel: np.ndarray):
        self.qvel[:] = qvel
