#!/usr/bin/env python3
"""Publish node/sensor update events to a broker for manual gateway testing."""
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Optional, Tuple

import paho.mqtt.client as mqtt

PROJECT_ROOT = Path(__file__).resolve().parents[1] / "apps" / "gateway-agent"
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from sensor_gateway.config import Settings  # noqa: E402
from sensor_gateway.models import Node, Sensor  # noqa: E402


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Publish gateway update events")
    parser.add_argument("--mqtt-url", help="Override GATEWAY_MQTT_URL")
    parser.add_argument("--qos", type=int, default=1, choices=(0, 1, 2))
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Print the topic and payload instead of publishing",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    node = sub.add_parser("node", help="Publish a node-update event")
    node.add_argument("node_id")
    node.add_argument("--name")
    node.add_argument("--location")
    node.add_argument("--unavailable", action="store_true")

    sensor = sub.add_parser("sensor", help="Publish a sensor-update event")
    sensor.add_argument("code")
    sensor.add_argument("--node", required=True, dest="node_id")
    sensor.add_argument("--type", default="analog")
    sensor.add_argument("--unit")
    sensor.add_argument("--interval", type=float)
    sensor.add_argument("--unavailable", action="store_true")

    availability = sub.add_parser("availability", help="Activate or deactivate a sensor")
    availability.add_argument("code")
    availability.add_argument("state", choices=("on", "off"))
    return parser


def build_event(args: argparse.Namespace, settings: Settings) -> Tuple[str, bytes]:
    if args.command == "node":
        node = Node(
            node_id=args.node_id,
            available=not args.unavailable,
            name=args.name,
            location=args.location,
        )
        return settings.node_update_topic, node.to_json()
    if args.command == "sensor":
        sensor = Sensor(
            code=args.code,
            node_id=args.node_id,
            available=not args.unavailable,
            type=args.type,
            unit=args.unit,
            interval_seconds=args.interval,
        )
        return settings.sensor_update_topic, sensor.to_json()
    payload = {"code": args.code, "available": args.state == "on"}
    return settings.sensor_availability_topic, json.dumps(payload).encode("utf-8")


def publish(settings: Settings, topic: str, payload: bytes, qos: int) -> None:
    client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2, client_id=f"{settings.gateway_id}-publish-update")
    if settings.mqtt_username:
        client.username_pw_set(settings.mqtt_username, settings.mqtt_password)
    client.connect(settings.mqtt_host, settings.mqtt_port, 30)
    client.loop_start()
    try:
        info = client.publish(topic, payload, qos=qos)
        info.wait_for_publish(timeout=10)
    finally:
        client.loop_stop()
        client.disconnect()


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = Settings(mqtt_url=args.mqtt_url) if args.mqtt_url else Settings()
    topic, payload = build_event(args, settings)
    if args.dry_run:
        print(json.dumps({"topic": topic, "payload": json.loads(payload)}))
        return 0
    try:
        publish(settings, topic, payload, args.qos)
    except (OSError, RuntimeError, ValueError) as exc:
        print(f"[publish-update] failed to publish to {settings.mqtt_host}:{settings.mqtt_port}: {exc}", file=sys.stderr)
        return 1
    print(f"[publish-update] published {len(payload)} bytes to {topic}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
