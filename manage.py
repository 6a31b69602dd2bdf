"""
Affinity MCP - CLI Management Tool.

Commands:
  serve [--name N] [--log-level L]   Start MCP server (stdio)
  tools                              List registered tools and input schemas
  call NAME [--args JSON]            Invoke one tool and print the result
  check                              Show platform, bridge and front document
"""

import argparse
import json
import sys

import anyio

from bridge import select_bridge
from canva import CanvaClient
from errors import AffinityMCPError
from tools import build_registry


def _fmt(obj) -> str:
    return json.dumps(obj, indent=2, ensure_ascii=False)


def cmd_serve(args):
    """Start the MCP server."""
    # stdout belongs to the protocol; the banner goes to stderr
    print("Starting Affinity MCP Server ...", file=sys.stderr)
    if args.name:
        print(f"  Name:      {args.name}", file=sys.stderr)
    if args.log_level:
        print(f"  Log level: {args.log_level}", file=sys.stderr)

    import server
    server.main(server_name=args.name, log_level=args.log_level)
    return 0


def cmd_tools(args):
    """Print registered tools with their input schemas."""
    registry = build_registry(select_bridge(), CanvaClient())
    tools = [
        {
            "name": tool.name,
            "description": (tool.description or "").split("\n")[0],
            "inputSchema": tool.inputSchema,
        }
        for tool in registry.list_tools()
    ]
    print(_fmt(tools))
    return 0


def cmd_call(args):
    """Invoke a single tool through the registry."""
    try:
        arguments = json.loads(args.args) if args.args else {}
    except json.JSONDecodeError as e:
        print(f"Error: --args is not valid JSON: {e}", file=sys.stderr)
        return 2

    async def _run():
        design_client = CanvaClient()
        try:
            registry = build_registry(select_bridge(), design_client)
            return await registry.invoke(args.name, arguments)
        finally:
            await design_client.aclose()

    try:
        result = anyio.run(_run)
    except AffinityMCPError as e:
        print(_fmt({"error": e.to_dict()}))
        return 1
    print(_fmt(result))
    return 0


def cmd_check(args):
    """Report platform, selected bridge and the front document."""
    bridge = select_bridge()

    sep = "=" * 55
    print(sep)
    print("  Affinity MCP Check")
    print(sep)
    print(f"  Platform:   {sys.platform}")
    print(f"  Bridge:     {type(bridge).__name__}")

    try:
        info = anyio.run(bridge.get_active)
    except AffinityMCPError as e:
        print(f"  Document:   unavailable ({e.kind}: {e.message})")
        print(sep)
        return 1

    if info.is_open:
        print(f"  Document:   {info.name}")
        print(f"  Path:       {info.path or '(unsaved)'}")
    else:
        print("  Document:   (none open)")
    print(sep)
    return 0


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Affinity MCP - Management CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Commands:
  serve                      Start MCP server (stdio)
  tools                      List registered tools
  call NAME [--args JSON]    Invoke one tool
  check                      Show bridge and front document status
        """,
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # serve
    p_serve = subparsers.add_parser("serve", help="Start MCP server")
    p_serve.add_argument("--name", help="Server name reported to clients (default: $MCP_NAME or affinity-mcp)")
    p_serve.add_argument("--log-level", help="Log level, e.g. DEBUG, INFO, WARNING")

    # tools
    subparsers.add_parser("tools", help="List registered tools and input schemas")

    # call
    p_call = subparsers.add_parser("call", help="Invoke one tool and print the result")
    p_call.add_argument("name", help="Tool name, e.g. get_active_document")
    p_call.add_argument("--args", help='Tool arguments as a JSON object, e.g. \'{"path": "/tmp/a.png"}\'')

    # check
    subparsers.add_parser("check", help="Show platform, bridge and front document")

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    commands = {
        "serve": cmd_serve,
        "tools": cmd_tools,
        "call": cmd_call,
        "check": cmd_check,
    }

    return commands[args.command](args)


if __name__ == "__main__":
    sys.exit(main() or 0)
