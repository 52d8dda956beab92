from __future__ import annotations

from dataclasses import dataclass
from typing import List

from yogi.utils.structures import CameraPosition, PoseMetadata


@dataclass
class PracticeSelection:
    target_pose: str
    camera_position: CameraPosition
    show_instructions: bool
    show_fps: bool


class ConfigCancelledError(RuntimeError):
    pass


def prompt_practice_config(
    poses: List[PoseMetadata],
    default_pose: str,
    default_camera: CameraPosition,
    show_instructions_default: bool,
    show_fps_default: bool,
) -> PracticeSelection:
    if not poses:
        raise RuntimeError("The pose catalog is empty. Add poses to configs/poses.yaml and retry.")

    try:
        import tkinter as tk
        from tkinter import ttk
    except ImportError as exc:  # pragma: no cover
        raise RuntimeError(
            "Tkinter is required for the practice picker but is not available in this environment."
        ) from exc

    pose_labels = [f"{pose.name} ({pose.difficulty})" for pose in poses]
    pose_map = {text: pose.label for text, pose in zip(pose_labels, poses)}
    default_index = next((idx for idx, pose in enumerate(poses) if pose.label == default_pose), 0)
    camera_options = [position.value for position in CameraPosition]

    root = tk.Tk()
    root.title("Yogi Practice Setup")
    root.resizable(False, False)

    container = ttk.Frame(root, padding=16)
    container.grid(column=0, row=0, sticky="nsew")

    camera_var = tk.StringVar(value=default_camera.value)
    instructions_var = tk.BooleanVar(value=show_instructions_default)
    fps_var = tk.BooleanVar(value=show_fps_default)

    ttk.Label(container, text="Pose:").grid(column=0, row=0, sticky="w")
    pose_box = ttk.Combobox(container, values=pose_labels, state="readonly")
    pose_box.grid(column=0, row=1, sticky="ew", pady=(0, 12))
    pose_box.current(default_index)

    ttk.Label(container, text="Camera:").grid(column=0, row=2, sticky="w")
    camera_box = ttk.Combobox(container, textvariable=camera_var, values=camera_options, state="readonly")
    camera_box.grid(column=0, row=3, sticky="ew", pady=(0, 12))

    toggles = ttk.LabelFrame(container, text="Display", padding=(12, 8))
    toggles.grid(column=0, row=4, sticky="ew", pady=(0, 12))
    ttk.Checkbutton(toggles, text="Show pose instructions", variable=instructions_var).grid(column=0, row=0, sticky="w")
    ttk.Checkbutton(toggles, text="Show FPS", variable=fps_var).grid(column=0, row=1, sticky="w")

    selection: dict[str, object] = {}

    def on_start() -> None:
        selection["target_pose"] = pose_map[pose_box.get()]
        selection["camera_position"] = camera_var.get()
        selection["show_instructions"] = instructions_var.get()
        selection["show_fps"] = fps_var.get()
        root.destroy()

    def on_cancel() -> None:
        selection.clear()
        root.destroy()

    root.protocol("WM_DELETE_WINDOW", on_cancel)

    start_btn = ttk.Button(container, text="Start Practice", command=on_start)
    start_btn.grid(column=0, row=5, sticky="ew", pady=(4, 0))
    root.mainloop()

    if not selection:
        raise ConfigCancelledError("Practice picker was closed before starting.")

    return PracticeSelection(
        target_pose=str(selection["target_pose"]),
        camera_position=CameraPosition(str(selection["camera_position"])),
        show_instructions=bool(selection["show_instructions"]),
        show_fps=bool(selection["show_fps"]),
    )
