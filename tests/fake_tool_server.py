#!/usr/bin/env python3
"""Line-delimited JSON-RPC tool server used by the transport tests.

Modes:
    normal   answer every request in order
    reorder  hold tools/call replies until three are pending, answer in reverse
    split    write every reply in two partial chunks, after a non-JSON log line
    corrupt  first tools/call ever (tracked by --state-file) reports broken state
    exit     exit without answering on any tools/call
    silent   never answer tools/call
"""
from __future__ import annotations

import argparse
import json
import os
import sys
import time
from pathlib import Path

TOOLS = [
    {"name": "get_all_content_types", "description": "Get all content types in the stack"},
    {"name": "get_all_entries", "description": "Get all entries of a content type"},
    {"name": "get_all_assets", "description": "Get all assets in the stack"},
    {"name": "delete_entry", "description": "Delete an entry"},
    {"name": "create_entry", "description": "Create an entry"},
    {"name": "publish_entry", "description": "Publish an entry to an environment"},
    {"name": "echo_env", "description": "Report the server environment"},
]

CONTENT_TYPES = {
    "content_types": [
        {"uid": "blog_post", "title": "Blog Post", "description": "Articles"},
        {"uid": "page", "title": "Page", "description": "Static pages"},
    ],
    "count": 2,
}


def send(message: dict, *, split: bool = False) -> None:
    data = json.dumps(message) + "\n"
    if split:
        middle = len(data) // 2
        sys.stdout.write(data[:middle])
        sys.stdout.flush()
        time.sleep(0.05)
        sys.stdout.write(data[middle:])
    else:
        sys.stdout.write(data)
    sys.stdout.flush()


def text_result(payload) -> dict:
    return {"content": [{"type": "text", "text": json.dumps(payload)}]}


def call_tool(name: str, arguments: dict) -> dict:
    if name == "get_all_content_types":
        return {"result": text_result(CONTENT_TYPES)}
    if name == "get_all_entries":
        uid = arguments.get("content_type_uid", "unknown")
        entries = [{"uid": f"{uid}_{i}", "title": f"{uid} entry {i}"} for i in range(2)]
        return {"result": text_result({"entries": entries, "count": 2})}
    if name == "get_all_assets":
        assets = [
            {
                "uid": "a1",
                "title": "Logo",
                "filename": "logo.png",
                "content_type": "image/png",
                "url": "https://images.example.com/logo.png",
            }
        ]
        return {"result": text_result({"assets": assets, "count": 1})}
    if name == "echo_env":
        keys = ("CONTENTSTACK_API_KEY", "GROUPS", "CONTENTSTACK_REGION", "CONTENTSTACK_LAUNCH_PROJECT_ID")
        return {"result": text_result({key: os.environ.get(key) for key in keys})}
    if name == "slow_echo":
        return {"result": text_result({"tag": arguments.get("tag")})}
    return {"error": {"code": -32601, "message": f"Unknown tool: {name}"}}


def main() -> None:
    parser = argparse.ArgumentParser()
    parser.add_argument("--mode", default="normal")
    parser.add_argument("--state-file", default=None)
    args = parser.parse_args()

    held = []
    while True:
        line = sys.stdin.readline()
        if not line:
            break
        line = line.strip()
        if not line:
            continue
        request = json.loads(line)
        request_id = request.get("id")
        if request_id is None:
            continue
        method = request.get("method")
        params = request.get("params") or {}

        if method == "initialize":
            send({"jsonrpc": "2.0", "id": request_id, "result": {"capabilities": {}}})
            continue
        if method == "tools/list":
            send({"jsonrpc": "2.0", "id": request_id, "result": {"tools": TOOLS}}, split=args.mode == "split")
            continue
        if method != "tools/call":
            send({"jsonrpc": "2.0", "id": request_id, "error": {"code": -32601, "message": "Method not found"}})
            continue

        if args.mode == "exit":
            sys.exit(1)
        if args.mode == "silent":
            continue
        if args.mode == "corrupt" and args.state_file and not Path(args.state_file).exists():
            Path(args.state_file).write_text("corrupted")
            send(
                {
                    "jsonrpc": "2.0",
                    "id": request_id,
                    "error": {
                        "code": -32603,
                        "message": "Cannot read properties of undefined (reading 'data')",
                    },
                }
            )
            continue

        reply = {"jsonrpc": "2.0", "id": request_id}
        reply.update(call_tool(params.get("name", ""), params.get("arguments") or {}))
        if args.mode == "reorder":
            held.append(reply)
            if len(held) == 3:
                for item in reversed(held):
                    send(item)
                held = []
            continue
        if args.mode == "split":
            sys.stdout.write("debug: handling tools/call\n")
            sys.stdout.flush()
        send(reply, split=args.mode == "split")


if __name__ == "__main__":
    main()
