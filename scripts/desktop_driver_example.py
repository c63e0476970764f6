#!/usr/bin/env python3
"""
AGI SDK - Local desktop agent through the agi-driver binary

Usage:
    python scripts/desktop_driver_example.py "Open the calculator and compute 12*34"

Examples:
    # Autonomous local mode (the driver captures the screen itself)
    python scripts/desktop_driver_example.py "Open Notes" --mode local

    # Explicit driver binary, voice enabled, verbose protocol log
    python scripts/desktop_driver_example.py "Read my last email" --binary ./agi-driver --voice --verbose

Environment:
    ANTHROPIC_API_KEY is passed to the driver process. AGI_DRIVER_PATH
    overrides binary discovery. A .env file is loaded on startup.
"""

import argparse
import asyncio
import os
import sys

from dotenv import load_dotenv
load_dotenv(override=True)

from agi_sdk import AgentDriver, DriverOptions
from agi_sdk.exceptions import AgiError
from agi_sdk.utils.logger import set_verbose


async def prompt(text: str) -> str:
    # input() blocks; keep the event loop free for driver events
    return await asyncio.get_running_loop().run_in_executor(None, input, text)


async def ask_yes_no(reason, action) -> bool:
    target = action.to_dict() if action is not None else {}
    reply = await prompt(f"\nAgent wants to {target.get('type', 'act')}: {reason}\nApprove? [y/N] ")
    return reply.strip().lower() in ("y", "yes")


async def ask_question(question: str) -> str:
    return await prompt(f"\nAgent asks: {question}\n> ")


async def main() -> int:
    parser = argparse.ArgumentParser(description="Run a desktop agent locally through agi-driver")
    parser.add_argument("goal", type=str, help="Task for the agent")
    parser.add_argument("--mode", type=str, default="local", choices=["", "local", "remote"], help="Driver mode (default: local)")
    parser.add_argument("--model", type=str, default="claude-sonnet", help="Model name (default: claude-sonnet)")
    parser.add_argument("--binary", type=str, default=None, help="Path to agi-driver (default: auto-detect)")
    parser.add_argument("--voice", action="store_true", help="Enable voice input/output")
    parser.add_argument("--camera", action="store_true", help="Enable camera feed")
    parser.add_argument("--mcp", action="store_true", help="Load MCP servers from ~/.agi/mcp.json")
    parser.add_argument("--verbose", action="store_true", help="Log protocol traffic to stderr")
    args = parser.parse_args()

    if args.verbose:
        set_verbose(True)

    api_key = os.getenv("ANTHROPIC_API_KEY")
    if not api_key:
        print("Error: ANTHROPIC_API_KEY is not set", file=sys.stderr)
        return 1

    options = DriverOptions(
        binary_path=args.binary,
        model=args.model,
        mode=args.mode,
        env={"ANTHROPIC_API_KEY": api_key},
        voice=args.voice,
        camera=args.camera,
        mcp=args.mcp,
    )

    driver = AgentDriver(
        options,
        on_thinking=lambda text: print(f"[thinking] {text}"),
        on_action=lambda action: print(f"[action] {action.to_dict() if action else None}"),
        on_confirm=ask_yes_no,
        on_ask_question=ask_question,
        on_state_change=lambda state: print(f"[state] {state.value}"),
        on_error=lambda message: print(f"[error] {message}", file=sys.stderr),
    )

    try:
        result = await driver.start(args.goal)
    except AgiError as e:
        print(f"\nRun failed: {e}", file=sys.stderr)
        return 1

    print(f"\nSuccess: {result.success}")
    print(f"Reason:  {result.reason}")
    print(f"Summary: {result.summary}")
    print(f"Steps:   {result.step}")
    return 0 if result.success else 1


if __name__ == "__main__":
    exit_code = asyncio.run(main())
    sys.exit(exit_code)
