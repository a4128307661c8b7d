#!/usr/bin/env python3
"""
thinkline CLI: a chat line to your local model, with the reasoning on speaker.

Every command has a line name and a standard alias:

    LINE            STANDARD        WHAT IT DOES
    ----            --------        ----------------------------------
    dial            serve, start    Start the local chat API
    ring            ping, status    Check the model server is up
    setup           pull, install   Pull models into the server
    lines           models          List installed models
    talk            chat            Chat in the terminal
    dump            export          Export chats to JSON
    restore         import          Import chats from an export
    flash           info            Show config and storage at a glance
    wipe            clear           Delete every stored chat
    tone            banner          Print the banner
"""

import argparse
import asyncio
import os
import sys
from pathlib import Path

__version__ = "0.1.0"

BANNER = r"""
    ╔════════════════════════════════════════════╗
    ║                                            ║
    ║   ▀█▀ █ █ █ █▄ █ █▄▀   █   █ █▄ █ █▀▀      ║
    ║    █  █▀█ █ █ ▀█ █ █   █▄▄ █ █ ▀█ ██▄      ║
    ║                                            ║
    ║   Think out loud. Answer clean.   v""" + __version__ + r"""   ║
    ║                                            ║
    ╚════════════════════════════════════════════╝
"""

DIM = "\033[2m"
RESET = "\033[0m"


def _config(args) -> dict:
    from thinkline.config import load_config
    return load_config(getattr(args, "config", None))


def _client(cfg: dict):
    from thinkline.backends.ollama import OllamaClient
    from thinkline.config import ClientConfig
    return OllamaClient(ClientConfig.from_config(cfg))


def _store(cfg: dict):
    from thinkline.config import StorageConfig
    from thinkline.storage import open_store
    return open_store(StorageConfig.from_config(cfg))


def _progress_bar(percent: float) -> str:
    return "█" * int(percent // 5) + "░" * (20 - int(percent // 5))


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def cmd_dial(args):
    """Start the local chat API."""
    import uvicorn

    cfg = _config(args)
    server = cfg.get("server", {}) or {}
    host = args.host or server.get("host", "127.0.0.1")
    port = args.port or server.get("port", 8000)
    backend = cfg.get("backend", {}) or {}

    print(BANNER)
    print(f"  Dialing up on {host}:{port}")
    print(f"  Model server: {backend.get('url', 'http://localhost:11434')}")
    print(f"  Model: {backend.get('default_model', 'qwen3:14b')}")
    print()

    # the server process loads its own config; point it at the same file
    if args.config:
        os.environ["THINKLINE_CONFIG"] = str(Path(args.config).resolve())

    uvicorn.run(
        "thinkline.main:app",
        host=host,
        port=port,
        reload=args.reload,
        log_level="info",
    )


def cmd_ring(args):
    """Ping the model server."""
    async def _ring():
        async with _client(_config(args)) as client:
            return client.url, await client.test_connection()

    url, result = asyncio.run(_ring())
    if result.reachable:
        print(f"  ☎  Ring ring... {url} is UP")
        print(f"  📦 Models: {', '.join(m.name for m in result.models) or 'none installed'}")
    else:
        print(f"  ✗  Dead line — {url}: {result.reason}")
        sys.exit(1)


def cmd_setup(args):
    """Pull models into the model server."""
    cfg = _config(args)

    async def _setup():
        async with _client(cfg) as client:
            required = [client.config.default_model] + (args.model or [])
            print(BANNER)
            print(f"  Model server: {client.url}")
            print(f"  Models to pull: {', '.join(required)}")
            print()

            probe = await client.test_connection()
            if not probe.reachable:
                print(f"  ✗  Cannot reach {client.url}: {probe.reason}")
                return False
            existing = {m.name for m in probe.models}

            ok = True
            for model in required:
                if model in existing:
                    print(f"  ✓  {model} — already available")
                    continue

                print(f"  ↓  Pulling {model}...")

                def on_progress(progress):
                    if progress.percent is not None:
                        bar = _progress_bar(progress.percent)
                        print(f"\r     {bar} {progress.percent:.0f}%  ", end="", flush=True)
                    elif progress.status:
                        print(f"\r     {progress.status}              ", end="", flush=True)

                result = await client.pull_model(model, on_progress=on_progress)
                if result.ok:
                    print(f"\r  ✓  {model} — pulled                    ")
                else:
                    ok = False
                    print(f"\r  ✗  {model} — failed: {result.error}               ")
            return ok

    ok = asyncio.run(_setup())
    print()
    if ok:
        print("  Done. Run 'thinkline talk' to start chatting.")
    else:
        sys.exit(1)


def cmd_lines(args):
    """List installed models."""
    from thinkline.errors import ThinklineError

    async def _lines():
        async with _client(_config(args)) as client:
            return await client.list_models()

    try:
        models = asyncio.run(_lines())
    except ThinklineError as e:
        print(f"  ✗  {e}")
        sys.exit(1)
    if not models:
        print("  No models installed. Try 'thinkline setup'.")
        return
    for m in models:
        size_gb = m.size / 1e9 if m.size else 0
        print(f"  {m.name:<32} {size_gb:>6.1f} GB")


class _LinePrinter:
    """Prints the growing thinking/answer text as deltas."""

    def __init__(self, show_thinking: bool):
        self.show_thinking = show_thinking
        self.thinking = ""
        self.answer = ""

    def on_thinking(self, text: str):
        if not self.show_thinking or self.answer:
            return
        if text.startswith(self.thinking):
            print(f"{DIM}{text[len(self.thinking):]}{RESET}", end="", flush=True)
        self.thinking = text

    def on_answer(self, text: str):
        if not text:
            return
        if not self.answer and self.thinking and self.show_thinking:
            print("\n")
        if text.startswith(self.answer):
            print(text[len(self.answer):], end="", flush=True)
        self.answer = text

    def reset(self):
        self.thinking = ""
        self.answer = ""


def cmd_talk(args):
    """Chat in the terminal."""
    from thinkline.session import ChatSession, SendStatus

    cfg = _config(args)
    printer = _LinePrinter(show_thinking=not args.quiet)

    async def _talk():
        store = _store(cfg)
        async with _client(cfg) as client:
            make = ChatSession.restore if args.resume else ChatSession
            session = make(
                client,
                store,
                model=args.model,
                on_answer=printer.on_answer,
                on_thinking=printer.on_thinking,
                on_storage_error=lambda msg: print(f"\n  ⚠ {msg}"),
            )
            if args.resume:
                for message in session.messages():
                    who = "you" if message.role == "user" else "bot"
                    print(f"  {who}> {message.content}")

            print("  Line open. Type 'exit' or Ctrl-C to hang up.\n")
            while True:
                try:
                    text = (await asyncio.to_thread(input, "  you> ")).strip()
                except EOFError:
                    break
                if not text:
                    continue
                if text.lower() in ("exit", "quit", "q", "hangup"):
                    break
                printer.reset()
                print("  bot> ", end="", flush=True)
                outcome = await session.send(text)
                if outcome.status == SendStatus.SUCCESS and not printer.answer:
                    print(outcome.answer, end="")
                elif outcome.status == SendStatus.ERROR:
                    print(f"\n  ✗  {outcome.error}", end="")
                print("\n")
                session.acknowledge()

    try:
        asyncio.run(_talk())
    except KeyboardInterrupt:
        pass
    print("\n  [line disconnected]")


def cmd_dump(args):
    """Export chats to JSON."""
    store = _store(_config(args))
    document = store.export_data(indent=2 if args.pretty else None)
    if document is None:
        print("  ✗  Export failed")
        sys.exit(1)
    with open(args.output, "w", encoding="utf-8") as f:
        f.write(document)
    print(f"  📦 Dumped {len(store.load_history())} chats to {args.output}")


def cmd_restore(args):
    """Import chats from an export document."""
    store = _store(_config(args))
    with open(args.input, encoding="utf-8") as f:
        document = f.read()
    if store.import_data(document):
        print(f"  ✓  Restored from {args.input} ({len(store.load_history())} chats)")
    else:
        print(f"  ✗  Could not import {args.input}")
        sys.exit(1)


def cmd_flash(args):
    """Show config and storage at a glance."""
    from thinkline.config import ClientConfig, StorageConfig, validate_client_config

    cfg = _config(args)
    client_cfg = ClientConfig.from_config(cfg)
    storage_cfg = StorageConfig.from_config(cfg)

    print(BANNER)
    print("  Configuration")
    print(f"  ├─ Server:   {client_cfg.base_url}")
    print(f"  ├─ Model:    {client_cfg.default_model}")
    print(f"  ├─ Timeout:  {client_cfg.timeout:.0f}s")
    print(f"  ├─ Storage:  {storage_cfg.backend} ({storage_cfg.path})")
    print(f"  └─ Quota:    {storage_cfg.max_bytes:,} chars")

    problems = validate_client_config(client_cfg)
    if problems:
        print()
        print("  Problems")
        for i, problem in enumerate(problems):
            prefix = "└─" if i == len(problems) - 1 else "├─"
            print(f"  {prefix} {problem}")

    store = _store(cfg)
    info = store.storage_info()
    history = store.load_history()
    settings = store.load_settings()
    print()
    print("  Storage")
    print(f"  ├─ Chats:     {len(history)}")
    print(f"  ├─ Selected:  {settings.selected_chat_id or 'none'}")
    print(f"  ├─ History:   {info['chatHistory']:,} chars")
    print(f"  ├─ Messages:  {info['chatMessages']:,} chars")
    print(f"  └─ Total:     {info['total']:,} chars")


def cmd_wipe(args):
    """Delete every stored chat and setting."""
    if not args.yes:
        answer = input("  Delete all chats and settings? [y/N] ").strip().lower()
        if answer not in ("y", "yes"):
            print("  Aborted.")
            return
    store = _store(_config(args))
    if store.clear_all():
        print("  ✓  All chat data cleared")
    else:
        print("  ✗  Some data could not be cleared (see log)")
        sys.exit(1)


def cmd_tone(args):
    """Print the banner."""
    print(BANNER)


# ---------------------------------------------------------------------------
# Parser with aliases
# ---------------------------------------------------------------------------

def _add_command(subparsers, names, help_text, func, setup_fn=None):
    """Register a command under multiple names (line name + standard)."""
    p = subparsers.add_parser(names[0], help=help_text, aliases=names[1:])
    p.set_defaults(func=func)
    p.add_argument("--config", "-c", default=None, help="Path to config.yaml")
    if setup_fn:
        setup_fn(p)
    return p


def main():
    parser = argparse.ArgumentParser(
        prog="thinkline",
        description="thinkline — Think out loud. Answer clean.",
        epilog=(
            "Each command has a line name and standard aliases.\n"
            "Example: 'thinkline talk' and 'thinkline chat' do the same thing.\n"
            "Run 'thinkline <command> --help' for command-specific options."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--version", "-V", action="version",
        version=f"thinkline {__version__}",
    )

    sub = parser.add_subparsers(dest="command", metavar="<command>")

    def setup_dial(p):
        p.add_argument("--host", default=None, help="Override listen host")
        p.add_argument("--port", "-p", type=int, default=None, help="Override listen port")
        p.add_argument("--reload", action="store_true", help="Auto-reload on code changes (dev)")

    _add_command(sub, ["dial", "serve", "start"],
                 "Start the local chat API", cmd_dial, setup_dial)

    _add_command(sub, ["ring", "ping", "status"],
                 "Check the model server is up", cmd_ring)

    def setup_setup(p):
        p.add_argument("--model", "-m", action="append", default=None,
                       help="Additional model to pull (can specify multiple times)")

    _add_command(sub, ["setup", "pull", "install"],
                 "Pull models into the model server", cmd_setup, setup_setup)

    _add_command(sub, ["lines", "models"], "List installed models", cmd_lines)

    def setup_talk(p):
        p.add_argument("--model", "-m", default=None, help="Model to chat with")
        p.add_argument("--resume", "-r", action="store_true", help="Continue the last selected chat")
        p.add_argument("--quiet", "-q", action="store_true", help="Hide the model's reasoning")

    _add_command(sub, ["talk", "chat"], "Chat in the terminal", cmd_talk, setup_talk)

    def setup_dump(p):
        p.add_argument("--output", "-o", default="thinkline_export.json", help="Output file")
        p.add_argument("--pretty", action="store_true", help="Pretty-print JSON")

    _add_command(sub, ["dump", "export"], "Export chats to JSON", cmd_dump, setup_dump)

    def setup_restore(p):
        p.add_argument("input", help="Export file to import")

    _add_command(sub, ["restore", "import"], "Import chats from an export", cmd_restore, setup_restore)

    _add_command(sub, ["flash", "info"], "Show config and storage at a glance", cmd_flash)

    def setup_wipe(p):
        p.add_argument("--yes", "-y", action="store_true", help="Don't ask for confirmation")

    _add_command(sub, ["wipe", "clear"], "Delete every stored chat", cmd_wipe, setup_wipe)

    _add_command(sub, ["tone", "banner"], "Print the banner", cmd_tone)

    args = parser.parse_args()
    if not args.command:
        cmd_tone(args)
        parser.print_help()
        return

    args.func(args)


if __name__ == "__main__":
    main()
