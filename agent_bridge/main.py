import argparse
import asyncio
import logging
import sys

from .config import BridgeConfig


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="agent-bridge", description="Agent backend bridge")
    parser.add_argument("--log-level", default=None, help="Log level (default: INFO, env AGENT_BRIDGE_LOG_LEVEL)")
    parser.add_argument("--mock", action="store_true", default=None, help="Use the scripted mock backend")
    parser.add_argument("--claude-bin", default=None, help="Claude Code executable (default: claude)")
    parser.add_argument("--codex-bin", default=None, help="Codex executable (default: codex)")
    parser.add_argument("--abort-grace", type=float, default=None, help="Seconds a run may wind down after abort (default: 3)")

    subparsers = parser.add_subparsers(dest="command")
    subparsers.add_parser("worker", help="Serve JSON-RPC on stdin/stdout (default)")
    serve_parser = subparsers.add_parser("serve", help="Run the HTTP/WebSocket surface over a worker")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Host (default: 127.0.0.1)")
    serve_parser.add_argument("--port", type=int, default=8431, help="Port (default: 8431)")
    serve_parser.add_argument("--external-deps-dir", default=None, help="Directory holding upgraded backends")
    return parser


def setup_logging(level: str) -> logging.Logger:
    """Log to stderr only: stdout is reserved for protocol frames."""
    log = logging.getLogger("agent_bridge")
    log.setLevel(getattr(logging, level.upper(), logging.INFO))
    fmt = logging.Formatter("%(asctime)s %(levelname)s %(message)s")
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(fmt)
    log.addHandler(handler)
    log.propagate = False
    return log


def _worker_env(args: argparse.Namespace) -> dict[str, str]:
    """CLI overrides forwarded to the spawned worker."""
    env: dict[str, str] = {}
    if args.mock:
        env["AGENT_BRIDGE_MOCK"] = "1"
    if args.log_level:
        env["AGENT_BRIDGE_LOG_LEVEL"] = args.log_level
    if args.claude_bin:
        env["AGENT_BRIDGE_CLAUDE_BIN"] = args.claude_bin
    if args.codex_bin:
        env["AGENT_BRIDGE_CODEX_BIN"] = args.codex_bin
    if args.abort_grace is not None:
        env["AGENT_BRIDGE_ABORT_GRACE"] = str(args.abort_grace)
    return env


def main(argv: list[str] | None = None):
    args = build_parser().parse_args(argv)
    config = BridgeConfig.load(overrides={
        "mock": args.mock,
        "log_level": args.log_level,
        "claude_bin": args.claude_bin,
        "codex_bin": args.codex_bin,
        "abort_grace": args.abort_grace,
    })
    log = setup_logging(config.log_level)

    if args.command == "serve":
        import uvicorn
        from .host import BridgeClient
        from .server.app import create_app

        app = create_app(BridgeClient(env=_worker_env(args)), external_deps_dir=args.external_deps_dir)
        log.info("starting agent-bridge server on %s:%d mock=%s", args.host, args.port, config.mock)
        uvicorn.run(app, host=args.host, port=args.port, log_level="warning", log_config=None)
        return

    from .worker import BridgeWorker

    worker = BridgeWorker(config)
    try:
        asyncio.run(worker.serve_stdio())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
