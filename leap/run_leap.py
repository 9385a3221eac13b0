"""
Headless runner for the LEAP cube rotation task.

There is no trajectory optimizer here: the hand holds its keyframe pose while the
task callbacks run every physics step exactly as a planner host would call them
(residual -> transition -> modify_state). Useful to watch drop/timeout handling,
goal resampling and the perceived-state filter without a GUI.

Run:
- `python leap/run_leap.py --steps 3000 --seed 0`
- `python leap/run_leap.py --free-goal --lag-steps 4 --ema-alpha 0.3`
"""

import logging
import threading
import time

import mujoco
import numpy as np

from leap_task import LeapTask
from task_config import build_config, parse_args
from task_model import BeliefState, hold_pose_ctrl, reset_to_keyframe


def _status_loop(task: LeapTask, stop_event: threading.Event, period_s: float):
    while not stop_event.wait(period_s):
        snap = task.snapshot()
        print(
            f"[status] rotations={snap['rotation_count']} best={snap['best_rotation_count']} "
            f"since_rotation={snap['time_since_last_rotation']:.1f}s resets={snap['resets']} "
            f"goal_err={snap['last_angle_deg']:.1f}deg lag_buf={snap['lag_buffer_len']}"
        )


def main(argv=None):
    # 1) Parse CLI and build task tuning.
    args = parse_args(argv)
    cfg = build_config(args)
    logging.basicConfig(level=logging.INFO, format="%(message)s")

    # 2) Load model; named objects are validated once inside LeapTask.
    task, model, data = LeapTask.from_model_path(cfg)
    reset_to_keyframe(model, data)
    ctrl_hold = hold_pose_ctrl(model)

    print(f"Model: {cfg.model_path} (nq={model.nq}, nv={model.nv}, nu={model.nu})")
    print(f"Residual dimension: {task.residual_dim}")
    print(f"Goal mode: {'axis-aligned' if task.goal_machine.axis_aligned(model) else 'free'}")
    print(f"Seed: {cfg.seed if cfg.seed is not None else 'random'}")

    stop_event = threading.Event()
    status_thread = None
    if cfg.status_every_s > 0.0:
        status_thread = threading.Thread(
            target=_status_loop,
            args=(task, stop_event, cfg.status_every_s),
            name="leap-status",
            daemon=True,
        )
        status_thread.start()

    # 3) Step physics and run the task callbacks.
    residual = np.zeros(task.residual_dim, dtype=float)
    cost_sum = 0.0
    max_pos_err = 0.0
    t0 = time.perf_counter()
    try:
        for _ in range(cfg.steps):
            task.residual(model, data, residual)
            cost_sum += float(residual @ residual)

            task.transition(model, data)

            belief = BeliefState.from_data(data)
            task.modify_state(belief)
            max_pos_err = max(max_pos_err, float(np.linalg.norm(belief.qpos[0:3] - data.qpos[0:3])))

            data.ctrl[:] = ctrl_hold
            mujoco.mj_step(model, data)
    finally:
        stop_event.set()
        if status_thread is not None:
            status_thread.join(timeout=1.0)

    wall_s = time.perf_counter() - t0
    snap = task.snapshot()
    print("\n=== SUMMARY ===")
    print(f"Steps: {cfg.steps} ({data.time:.2f}s sim, {wall_s:.2f}s wall)")
    print(f"Rotations: {snap['rotation_count']} (best {snap['best_rotation_count']})")
    print(f"Resets: {snap['resets']}")
    print(f"Mean residual cost: {cost_sum / max(cfg.steps, 1):.4f}")
    print(f"Max perceived cube position error: {max_pos_err * 1000.0:.2f} mm")


if __name__ == "__main__":
    main()
