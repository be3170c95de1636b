"""
codeagent command-line entry point.

    codeagent run "add a --verbose flag" --dir ./project
    codeagent doctor
    codeagent tools
"""

import argparse
import asyncio
import importlib.util
import logging
import sys
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, Optional

from codeagent import __version__
from codeagent.config.settings import ENV_API_KEYS, AgentSettings, load_config, load_settings
from codeagent.core.errors import CodeAgentError
from codeagent.core.stream_frames import COMPLETED, Frame, encode_stream
from codeagent.core.tools import TOOL_DEFINITIONS

logger = logging.getLogger(__name__)

CYAN = "\033[38;5;51m"
GRAY = "\033[38;5;250m"
RED = "\033[38;5;196m"
RESET = "\033[0m"

SDK_MODULES = {
    "anthropic": "anthropic",
    "openai": "openai",
    "google-generativeai": "google.generativeai",
}


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )


def _err(text: str) -> None:
    print(text, file=sys.stderr, flush=True)


def _module_available(name: str) -> bool:
    try:
        return importlib.util.find_spec(name) is not None
    except ModuleNotFoundError:
        return False


# ----------------------------------------------------------------------
# run
# ----------------------------------------------------------------------

def _render_frame(frame: Frame) -> None:
    kind = frame.get("type")
    if kind == "text":
        sys.stdout.write(frame["text"])
        sys.stdout.flush()
    elif kind == "functionCall":
        _err(f"\n{GRAY}→ {frame['name']} {frame['args']}{RESET}")
    elif kind == "toolResult":
        _render_result(frame)
    elif kind == "toolResultsBatch":
        for result in frame["results"]:
            _render_result(result)
    elif kind == "retrying":
        _err(
            f"{GRAY}Retrying ({frame['attempt']}/{frame['maxRetries']}) in "
            f"{frame['delay']:.1f}s: {frame['reason']}{RESET}"
        )
    elif kind == "error":
        _err(f"{RED}✗ {frame['message']}{RESET}")
    elif kind == "complete":
        sys.stdout.write("\n")
        usage = frame.get("usage") or {}
        summary = f"[{frame['status']}] turns={frame['turns']}"
        if usage:
            summary += (
                f" tokens={usage.get('inputTokens', 0)}/{usage.get('outputTokens', 0)}"
                f" cost=€{usage.get('costEur', 0):.4f}"
            )
        if frame["filesCreated"]:
            summary += f" created={','.join(frame['filesCreated'])}"
        if frame["filesModified"]:
            summary += f" modified={','.join(frame['filesModified'])}"
        _err(f"{CYAN}{summary}{RESET}")


def _render_result(result: Dict[str, Any]) -> None:
    marker = f"{CYAN}✓" if result.get("success") else f"{RED}✗"
    first_line = (result.get("content") or "").splitlines()[0:1]
    _err(f"{marker} {result.get('name')}{RESET} {GRAY}{''.join(first_line)[:120]}{RESET}")


async def _stream_run(loop, args) -> int:
    status: Optional[str] = None
    frames = loop.run(args.instruction, session_id=args.session)

    async def watched():
        nonlocal status
        async for frame in frames:
            if frame.get("type") == "complete":
                status = frame["status"]
            yield frame

    if args.json:
        async for chunk in encode_stream(watched()):
            sys.stdout.write(chunk)
            sys.stdout.flush()
    else:
        async for frame in watched():
            _render_frame(frame)

    return 0 if status == COMPLETED else 1


def cmd_run(args) -> int:
    """Run one instruction against a project directory."""
    from codeagent.core.agent_loop import AgentLoop
    from codeagent.core.ai.factory import AIProviderFactory
    from codeagent.core.supervisor import ToolSupervisor
    from codeagent.core.tool_cache import ToolResultCache

    try:
        config = load_config(Path(args.config) if args.config else None)
        settings = load_settings(config)
        if args.max_turns is not None:
            settings = replace(settings, max_turns=args.max_turns)

        provider = AIProviderFactory.create_from_config(
            config.get("providers") or {},
            active_provider=args.provider or settings.active_provider,
            model=args.model,
        )
        supervisor = ToolSupervisor(
            args.dir or ".",
            cache=ToolResultCache(
                ttl_seconds=settings.cache_ttl_seconds,
                max_entries=settings.cache_max_entries,
            ),
            command_timeout=settings.command_timeout,
            max_command_output=settings.max_command_output,
        )
    except (CodeAgentError, ValueError) as e:
        _err(f"{RED}✗ {e}{RESET}")
        return 2

    logger.info(f"Using {provider.provider_type.value} model {provider.model}")
    loop = AgentLoop(provider, supervisor, settings)
    try:
        return asyncio.run(_stream_run(loop, args))
    except KeyboardInterrupt:
        _err(f"\n{GRAY}Interrupted{RESET}")
        return 130


# ----------------------------------------------------------------------
# doctor / tools
# ----------------------------------------------------------------------

def cmd_doctor(args) -> int:
    """Check SDK availability and configured providers."""
    print(f"\n{CYAN}codeagent doctor{RESET}")
    print("=" * 60)
    print(f"{CYAN}✓{RESET} Python {sys.version.split()[0]}")

    missing = []
    for package, module in SDK_MODULES.items():
        if _module_available(module):
            print(f"{CYAN}✓{RESET} {package} SDK installed")
        else:
            missing.append(package)
            print(f"{RED}✗{RESET} {package} SDK missing")

    print(f"\n{CYAN}Providers:{RESET}")
    try:
        config = load_config(Path(args.config) if args.config else None)
    except ValueError as e:
        print(f"{RED}✗{RESET} Failed to load config: {e}")
        return 1

    providers = config.get("providers") or {}
    configured = [name for name in ENV_API_KEYS if (providers.get(name) or {}).get("api_key")]
    for name in ENV_API_KEYS:
        if name in configured:
            print(f"{CYAN}✓{RESET} {name} API key configured")
        else:
            print(f"{GRAY}○{RESET} {name} not configured ({ENV_API_KEYS[name]})")

    settings = AgentSettings.from_config(config)
    print(f"\n{CYAN}Agent:{RESET} max_turns={settings.max_turns} "
          f"max_retries={settings.max_retries} "
          f"active_provider={settings.active_provider or 'auto'}")

    print(f"\n{CYAN}{'=' * 60}{RESET}")
    if not configured:
        print(f"{RED}⚠️  No AI providers configured!{RESET}")
        return 1
    if missing:
        print(f"{RED}⚠️  Missing dependencies: {', '.join(missing)}{RESET}")
        print(f"Install with: pip install {' '.join(missing)}")
        return 1
    print(f"{CYAN}✅ All systems operational{RESET}\n")
    return 0


def cmd_tools(args) -> int:
    """List the tools exposed to the model."""
    for tool in TOOL_DEFINITIONS:
        kind = "read-only" if tool.read_only else "mutating"
        args_text = ", ".join(
            name if name in tool.required else f"[{name}]" for name, _, _ in tool.properties
        )
        print(f"{CYAN}{tool.name}{RESET}({args_text}) {GRAY}{kind}{RESET}")
        print(f"    {tool.description}")
    return 0


# ----------------------------------------------------------------------
# Parser
# ----------------------------------------------------------------------

def _create_parser() -> argparse.ArgumentParser:
    """Create the main argument parser with subcommands."""
    parser = argparse.ArgumentParser(
        prog="codeagent",
        description="codeagent: an AI coding agent that reads and edits a project through tools",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  codeagent run "fix the failing test" --dir .
  codeagent run "explain src/app.py" --provider gemini --json
  codeagent doctor
  codeagent tools
        """
    )
    parser.add_argument("--version", action="version", version=f"codeagent {__version__}")
    parser.add_argument("--config", type=str, help="Path to config.json")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging on stderr")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    parser_run = subparsers.add_parser("run", help="Run one instruction")
    parser_run.add_argument("instruction", help="What the agent should do")
    parser_run.add_argument("--dir", type=str, help="Project root (default: current directory)")
    parser_run.add_argument("--provider", type=str, help="anthropic, openai, groq or gemini")
    parser_run.add_argument("--model", type=str, help="Override the model from config")
    parser_run.add_argument("--session", type=str, default="cli", help="Session identifier")
    parser_run.add_argument("--max-turns", type=int, help="Override agent.max_turns")
    parser_run.add_argument("--json", action="store_true", help="Emit raw frames as server-sent events")

    subparsers.add_parser("doctor", help="Check SDKs and configuration")
    subparsers.add_parser("tools", help="List the tool contract")

    return parser


def main(argv=None) -> int:
    """Main entry point with subcommand routing."""
    parser = _create_parser()
    args = parser.parse_args(argv)
    _setup_logging(args.verbose)

    if args.command == "run":
        return cmd_run(args)
    elif args.command == "doctor":
        return cmd_doctor(args)
    elif args.command == "tools":
        return cmd_tools(args)
    else:
        parser.print_help()
        return 1


if __name__ == "__main__":
    sys.exit(main())
