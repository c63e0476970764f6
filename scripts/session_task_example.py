#!/usr/bin/env python3
"""
AGI SDK - Run a browser task through the HTTP API

Usage:
    python scripts/session_task_example.py "Find the population of Tokyo"

Examples:
    # Poll until done and print the result
    python scripts/session_task_example.py "Find the top story on news.ycombinator.com"

    # Stream live events instead of polling
    python scripts/session_task_example.py "Summarize the wikipedia AI article" \\
        --start-url https://wikipedia.org --stream

Environment:
    AGI_API_KEY (required), AGI_BASE_URL (optional). A .env file is loaded on startup.
"""

import argparse
import asyncio
import json
import sys

from dotenv import load_dotenv
load_dotenv(override=True)

from agi_sdk import AgiClient
from agi_sdk.core.models import EventType
from agi_sdk.exceptions import AgiError
from agi_sdk.utils.logger import set_verbose


async def stream(session, task: str, start_url: str):
    await session.send_message(task, start_url=start_url)
    async for event in session.stream_events():
        data = event.data
        if isinstance(data, dict) and "content" in data:
            data = data["content"]
        elif not isinstance(data, str):
            data = json.dumps(data)
        print(f"[{event.event.value}] {data}")
        if event.event == EventType.QUESTION:
            print("(agent is waiting for input; answer with session.send_message)")


async def main() -> int:
    parser = argparse.ArgumentParser(description="Run a task in an AGI browser session")
    parser.add_argument("task", type=str, help="Task for the agent")
    parser.add_argument("--agent", type=str, default="agi-0", help="Agent name (default: agi-0)")
    parser.add_argument("--start-url", type=str, default=None, help="Page to start on")
    parser.add_argument("--timeout", type=float, default=600.0, help="Task timeout in seconds (default: 600)")
    parser.add_argument("--stream", action="store_true", help="Stream events instead of polling")
    parser.add_argument("--verbose", action="store_true", help="Log HTTP traffic to stderr")
    args = parser.parse_args()

    if args.verbose:
        set_verbose(True)

    try:
        async with AgiClient() as client:
            async with await client.session(args.agent) as session:
                print(f"Session: {session.session_id}")
                if session.vnc_url:
                    print(f"Watch:   {session.vnc_url}")

                if args.stream:
                    await stream(session, args.task, args.start_url)
                    return 0

                result = await session.run_task(
                    args.task,
                    start_url=args.start_url,
                    timeout=args.timeout,
                    on_status_change=lambda status: print(f"[status] {status.value if status else '?'}"),
                    on_message=lambda msg: print(f"[{msg.type.value if msg.type else '?'}] {msg.content_as_string()}"),
                )
    except AgiError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    meta = result.metadata
    print(f"\nSuccess:  {meta.success}")
    print(f"Steps:    {meta.steps}")
    print(f"Duration: {meta.duration:.1f}s")
    print(f"Result:   {json.dumps(result.data, indent=2) if not isinstance(result.data, str) else result.data}")
    return 0 if meta.success else 1


if __name__ == "__main__":
    exit_code = asyncio.run(main())
    sys.exit(exit_code)
