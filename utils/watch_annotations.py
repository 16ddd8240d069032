import argparse
import asyncio
import json

import websockets

DEFAULT_WS_URL = "ws://127.0.0.1:5000/ws/annotations"
DEFAULT_ORIGIN = "http://127.0.0.1:5000"


def _describe(payload: dict) -> str:
    annotation = payload.get("annotation") or {}
    parts = [f"{payload.get('event', '?'):>7}", payload.get("id", "?")]
    if annotation:
        parts.append(annotation.get("type", "?"))
        parts.append(f"t={annotation.get('timestamp')}s+{annotation.get('duration')}s")
        parts.append(f"video={annotation.get('video')}")
    return " ".join(str(part) for part in parts)


async def _keepalive(ws, interval: float, video) -> None:
    if interval <= 0:
        return
    while True:
        await asyncio.sleep(interval)
        try:
            await ws.send(json.dumps({"video": video}))
        except websockets.ConnectionClosed:
            return


async def main() -> None:
    parser = argparse.ArgumentParser(
        description="Print the /ws/annotations change feed of the annotation API."
    )
    parser.add_argument("--url", default=DEFAULT_WS_URL, help="WebSocket URL.")
    parser.add_argument("--origin", default=DEFAULT_ORIGIN, help="Origin header.")
    parser.add_argument(
        "--video",
        default=None,
        help="Only show changes for this video key (default: all videos).",
    )
    parser.add_argument(
        "--keepalive",
        type=float,
        default=20.0,
        help="Seconds between keepalive control messages (0 to disable).",
    )
    args = parser.parse_args()

    async with websockets.connect(args.url, origin=args.origin) as ws:
        await ws.send(json.dumps({"video": args.video}))
        keepalive_task = asyncio.create_task(_keepalive(ws, args.keepalive, args.video))
        print(f"Watching {args.url} for {args.video or 'all videos'}. Ctrl+C to stop.")
        try:
            async for message in ws:
                if isinstance(message, bytes):
                    message = message.decode("utf-8", errors="ignore")
                try:
                    payload = json.loads(message)
                except json.JSONDecodeError:
                    continue
                print(_describe(payload))
        finally:
            keepalive_task.cancel()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
