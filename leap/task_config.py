import argparse
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import numpy as np
import yaml


DEFAULT_TASK_CONFIG_PATH = Path(__file__).with_name("config.yaml")
DEFAULT_MODEL_PATH = Path(__file__).with_name("task.xml")

# Parameter/telemetry vector layout shared with the planner GUI.
NUM_PARAMETERS = 16
P_ROTATION_COUNT = 0
P_BEST_ROTATION_COUNT = 1
P_TIME_SINCE_ROTATION = 2
P_SECONDS_PER_ROTATION = 3
P_STD_ROT = 4
P_STD_POS = 5
P_BIAS_POS = slice(6, 9)
P_QUAT_NOISE_MAX = 9
P_POS_NOISE_MAX = 10
P_EMA_ALPHA = 11
P_LAG_STEPS = 12
P_DEBUG_CUBE_POS = slice(13, 16)

TUNABLE_KEYS = {
    "axis_aligned_goal",
    "seed",
    "timeout_s",
    "free_goal_min_angle_deg",
    "std_rot",
    "std_pos",
    "bias_pos",
    "quat_noise_max",
    "pos_noise_max",
    "ema_alpha",
    "lag_steps",
}


def _merge_tunable_block(target: dict[str, Any], block: Any, label: str) -> None:
    if block is None:
        return
    if not isinstance(block, dict):
        raise ValueError(f"Task config block '{label}' must be a mapping.")
    for key, value in block.items():
        if key in TUNABLE_KEYS:
            target[key] = value


def _parse_tuning_file(path: Path) -> dict[str, Any]:
    text = path.read_text(encoding="utf-8")
    if not text.strip():
        return {}
    loaded = yaml.safe_load(text)
    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        raise ValueError(f"Task tuning file '{path}' must define a mapping at top level.")
    return loaded


def _resolve_tuning_overrides(config_path_arg: str | None, *, goal_mode: str) -> dict[str, Any]:
    cfg_path = Path(config_path_arg).expanduser() if config_path_arg else DEFAULT_TASK_CONFIG_PATH
    if not cfg_path.exists():
        if config_path_arg:
            raise ValueError(f"Task tuning file '{cfg_path}' does not exist.")
        return {}
    data = _parse_tuning_file(cfg_path)
    merged: dict[str, Any] = {}

    _merge_tunable_block(merged, data, "top_level")
    _merge_tunable_block(merged, data.get("global"), "global")

    # Per goal-mode blocks let the free-goal setup use its own noise levels.
    mode_map = data.get("goal_mode")
    if isinstance(mode_map, dict):
        _merge_tunable_block(merged, mode_map.get(goal_mode), f"goal_mode.{goal_mode}")
    return merged


def _override_float(overrides: dict[str, Any], key: str, current: float) -> float:
    if key not in overrides:
        return float(current)
    value = overrides[key]
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Task tuning key '{key}' must be numeric, got {value!r}.") from exc


def _override_int(overrides: dict[str, Any], key: str, current: int | None) -> int | None:
    if key not in overrides:
        return current
    value = overrides[key]
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Task tuning key '{key}' must be integer-compatible, got {value!r}.") from exc


def _override_array(overrides: dict[str, Any], key: str, current: np.ndarray) -> np.ndarray:
    if key not in overrides:
        return current
    value = np.asarray(overrides[key], dtype=float)
    if value.shape != current.shape:
        raise ValueError(f"Task tuning key '{key}' must have shape {current.shape}, got {value.shape}.")
    return value.astype(float, copy=False)


@dataclass(frozen=True)
class TaskConfig:
    model_path: Path
    seed: int | None
    axis_aligned_goal: bool | None
    # Workspace tube the cube centre should stay in.
    tube_x_min: float
    tube_x_max: float
    tube_y_min: float
    tube_y_max: float
    tube_floor_z: float
    palm_tilt_rad: float
    palm_clearance_m: float
    workspace_slope: float
    axis_aligned_angle_thresh_deg: float
    free_angle_thresh_deg: float
    free_goal_min_angle_deg: float
    timeout_s: float
    std_rot: float
    std_pos: float
    bias_pos: np.ndarray
    quat_noise_max: float
    pos_noise_max: float
    ema_alpha: float
    lag_steps: int
    steps: int
    status_every_s: float


def default_parameters(cfg: TaskConfig) -> np.ndarray:
    """Initial parameter/telemetry vector: telemetry zeroed, tunables from config."""
    parameters = np.zeros(NUM_PARAMETERS, dtype=float)
    parameters[P_STD_ROT] = cfg.std_rot
    parameters[P_STD_POS] = cfg.std_pos
    parameters[P_BIAS_POS] = cfg.bias_pos
    parameters[P_QUAT_NOISE_MAX] = cfg.quat_noise_max
    parameters[P_POS_NOISE_MAX] = cfg.pos_noise_max
    parameters[P_EMA_ALPHA] = cfg.ema_alpha
    parameters[P_LAG_STEPS] = float(cfg.lag_steps)
    return parameters


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Headless LEAP hand cube-rotation task runner.")
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help=(
            "Optional task tuning YAML file. "
            f"If omitted, auto-loads {DEFAULT_TASK_CONFIG_PATH.as_posix()} when present."
        ),
    )
    parser.add_argument("--model", type=str, default=None, help="MJCF task model path.")
    parser.add_argument("--seed", type=int, default=None, help="Seed for goal sampling and sensor noise.")
    goal_group = parser.add_mutually_exclusive_group()
    goal_group.add_argument(
        "--axis-aligned-goal",
        dest="goal_mode",
        action="store_const",
        const="axis_aligned",
        help="Sample goals from the 24 cube face/rotation combinations.",
    )
    goal_group.add_argument(
        "--free-goal",
        dest="goal_mode",
        action="store_const",
        const="free",
        help="Sample goals uniformly on SO(3), at least 90 deg from the previous goal.",
    )
    parser.set_defaults(goal_mode=None)
    parser.add_argument("--timeout-s", type=float, default=None, help="Seconds without a rotation before reset.")
    parser.add_argument("--std-rot", type=float, default=None, help="Orientation noise std in tangent space (rad).")
    parser.add_argument("--std-pos", type=float, default=None, help="Position noise std (m).")
    parser.add_argument("--quat-noise-max", type=float, default=None, help="Orientation noise clamp (rad).")
    parser.add_argument("--pos-noise-max", type=float, default=None, help="Position noise clamp (m).")
    parser.add_argument("--ema-alpha", type=float, default=None, help="Velocity EMA coefficient in [0, 1].")
    parser.add_argument("--lag-steps", type=int, default=None, help="Observation lag in control steps.")
    parser.add_argument("--steps", type=int, default=2000, help="Physics steps to run headless.")
    parser.add_argument(
        "--status-every-s",
        type=float,
        default=1.0,
        help="Status thread print period in wall seconds (0 disables).",
    )
    return parser.parse_args(argv)


def build_config(args) -> TaskConfig:
    goal_mode = getattr(args, "goal_mode", None)
    overrides = _resolve_tuning_overrides(
        getattr(args, "config", None),
        goal_mode=goal_mode or "axis_aligned",
    )

    seed = _override_int(overrides, "seed", None)
    axis_aligned_goal: bool | None = None
    if "axis_aligned_goal" in overrides:
        axis_aligned_goal = bool(_override_int(overrides, "axis_aligned_goal", 1))
    timeout_s = _override_float(overrides, "timeout_s", 80.0)
    free_goal_min_angle_deg = _override_float(overrides, "free_goal_min_angle_deg", 90.0)
    std_rot = _override_float(overrides, "std_rot", 0.0)
    std_pos = _override_float(overrides, "std_pos", 0.0)
    bias_pos = _override_array(overrides, "bias_pos", np.zeros(3, dtype=float))
    quat_noise_max = _override_float(overrides, "quat_noise_max", 0.0)
    pos_noise_max = _override_float(overrides, "pos_noise_max", 0.0)
    ema_alpha = _override_float(overrides, "ema_alpha", 1.0)
    lag_steps = _override_int(overrides, "lag_steps", 0) or 0

    # CLI wins over the tuning file.
    if getattr(args, "seed", None) is not None:
        seed = int(args.seed)
    if goal_mode is not None:
        axis_aligned_goal = goal_mode == "axis_aligned"
    if getattr(args, "timeout_s", None) is not None:
        timeout_s = float(args.timeout_s)
    if getattr(args, "std_rot", None) is not None:
        std_rot = float(args.std_rot)
    if getattr(args, "std_pos", None) is not None:
        std_pos = float(args.std_pos)
    if getattr(args, "quat_noise_max", None) is not None:
        quat_noise_max = float(args.quat_noise_max)
    if getattr(args, "pos_noise_max", None) is not None:
        pos_noise_max = float(args.pos_noise_max)
    if getattr(args, "ema_alpha", None) is not None:
        ema_alpha = float(args.ema_alpha)
    if getattr(args, "lag_steps", None) is not None:
        lag_steps = int(args.lag_steps)

    model_arg = getattr(args, "model", None)
    model_path = Path(model_arg).expanduser() if model_arg else DEFAULT_MODEL_PATH

    return TaskConfig(
        model_path=model_path,
        seed=seed,
        axis_aligned_goal=axis_aligned_goal,
        tube_x_min=0.08,
        tube_x_max=0.14,
        tube_y_min=-0.02,
        tube_y_max=0.02,
        tube_floor_z=-0.015,
        palm_tilt_rad=float(np.radians(20.0)),
        palm_clearance_m=0.035,
        workspace_slope=250.0,
        axis_aligned_angle_thresh_deg=11.4592,
        free_angle_thresh_deg=22.9183,
        free_goal_min_angle_deg=float(np.clip(free_goal_min_angle_deg, 0.0, 179.0)),
        timeout_s=float(max(timeout_s, 0.0)),
        std_rot=float(max(std_rot, 0.0)),
        std_pos=float(max(std_pos, 0.0)),
        bias_pos=bias_pos,
        quat_noise_max=float(max(quat_noise_max, 0.0)),
        pos_noise_max=float(max(pos_noise_max, 0.0)),
        ema_alpha=float(np.clip(ema_alpha, 0.0, 1.0)),
        lag_steps=int(max(lag_steps, 0)),
        steps=int(max(getattr(args, "steps", 0), 0)),
        status_every_s=float(max(getattr(args, "status_every_s", 0.0), 0.0)),
    )
