"""Burn the stored annotations of a video into a copy of the file.

Run from the repository root: python -m utils.render_annotations --video clip.mp4
"""
import argparse
import asyncio

import cv2

from annotator.api import API_BASE, AnnotationApi
from annotator.normalizer import BoxSize
from annotator.interaction import RenderFrame
from annotator.overlay import OverlayRenderer
from annotator.timeline import WindowPolicy, visible_annotations

DEFAULT_FPS = 30.0


async def _fetch_annotations(api_base: str, video_key):
    async with AnnotationApi(api_base) as api:
        return await api.list_annotations(video_key)


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Render annotations from the annotation API onto a video file."
    )
    parser.add_argument("--video", required=True, help="Path to the source video.")
    parser.add_argument("--output", default="annotated.mp4", help="Output video path.")
    parser.add_argument("--api", default=API_BASE, help="Annotation API base URL.")
    parser.add_argument(
        "--key",
        default=None,
        help="Video key the annotations are stored under (default: all).",
    )
    parser.add_argument(
        "--policy",
        choices=[policy.value for policy in WindowPolicy],
        default=WindowPolicy.full.value,
        help="How long each annotation stays on screen.",
    )
    args = parser.parse_args()

    annotations = asyncio.run(_fetch_annotations(args.api, args.key))
    print(f"Fetched {len(annotations)} annotations.")

    cap = cv2.VideoCapture(args.video)
    if not cap.isOpened():
        raise RuntimeError(f"Could not open video: {args.video}")
    fps = cap.get(cv2.CAP_PROP_FPS) or DEFAULT_FPS
    width = int(cap.get(cv2.CAP_PROP_FRAME_WIDTH))
    height = int(cap.get(cv2.CAP_PROP_FRAME_HEIGHT))
    writer = cv2.VideoWriter(
        args.output, cv2.VideoWriter_fourcc(*"mp4v"), fps, (width, height)
    )

    renderer = OverlayRenderer()
    box = BoxSize(float(width), float(height))
    policy = WindowPolicy(args.policy)
    frame_idx = 0
    try:
        while True:
            ok, frame = cap.read()
            if not ok:
                break
            current_time = frame_idx / fps
            render_frame = RenderFrame(
                current_time=current_time,
                box=box,
                annotations=tuple(visible_annotations(annotations, current_time, policy)),
            )
            writer.write(renderer.draw_frame(frame, render_frame))
            frame_idx += 1
    finally:
        cap.release()
        writer.release()

    print(f"Wrote {frame_idx} frames to {args.output}")


if __name__ == "__main__":
    main()
