#!/usr/bin/env python
"""
Live viewer client - connects to the engine websocket and prints detection events.
"""

import argparse
import asyncio
import json

import websockets


def summarize(event):
    """One line per event: camera, time and what was seen."""
    detections = event.get("detections", [])
    if not detections:
        return f"[{event['camera_id']}] {event['timestamp']} heartbeat"
    parts = []
    for det in detections:
        data = det.get("data", {})
        label = det["type"]
        if det["type"] == "license_plate" and data.get("text"):
            label = f"plate {data['text']}"
        parts.append(f"{label} ({data.get('confidence', 0):.2f}) {det['tracking_id']}")
    return f"[{event['camera_id']}] {event['timestamp']} " + ", ".join(parts)


async def watch(uri, camera=None, show_heartbeats=False):
    async with websockets.connect(uri) as websocket:
        print(f"Connected to {uri}")
        async for raw in websocket:
            event = json.loads(raw)
            if camera and event.get("camera_id") != camera:
                continue
            if not event.get("detections") and not show_heartbeats:
                continue
            print(summarize(event))


def main():
    parser = argparse.ArgumentParser(description="Print live detection events")
    parser.add_argument("--uri", default="ws://localhost:8765/ws")
    parser.add_argument("--camera", help="Only show events of this camera_id")
    parser.add_argument("--heartbeats", action="store_true", help="Also show empty events")
    args = parser.parse_args()
    try:
        asyncio.run(watch(args.uri, args.camera, args.heartbeats))
    except KeyboardInterrupt:
        print("\nStopped")


if __name__ == "__main__":
    main()
