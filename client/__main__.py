"""castlink terminal entry point: python -m client HOST [PORT]."""
from __future__ import annotations
import argparse
import contextlib
import asyncio
import logging
import sys
import threading
from pathlib import Path
from typing import Iterator, Optional, TextIO

from client.connection import CastConnection
from client.controller import CastController
from shared.config import Config, ConnectionConfig, load_config
from shared.errors import CastError, ConnectError
from shared.logging_utils import setup_rotating_logger

logger = logging.getLogger("castlink.client")

HELP = "u/d volume  f/b seek +-10s  space/p pause  s stop  q status  x quit"
SEEK_STEP = 10.0


def _parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="castlink", description="Control a Cast receiver from the terminal.")
    parser.add_argument("host", nargs="?", help="receiver address")
    parser.add_argument("port", nargs="?", type=int, help="receiver port (default 8009)")
    parser.add_argument("--config", type=Path, help="castlink TOML config file")
    parser.add_argument("--debug", action="store_true", help="log protocol traffic")
    return parser.parse_args(argv)


def _status_line(controller: CastController) -> str:
    volume = "?" if controller.volume is None else f"{controller.volume:.2f}"
    duration = "?" if controller.duration is None else f"{controller.duration:.0f}"
    app = controller.application.info.display_name if controller.application else "-"
    muted = " muted" if controller.muted else ""
    return (f"[{controller.state}] {app}: {controller.title or '-'} "
            f"{controller.current_position():.0f}/{duration}s vol={volume}{muted}")


def _handle_key(controller: CastController, key: str) -> bool:
    """Apply one command key. Returns False to quit."""
    if key == "x":
        return False
    if key == "u":
        controller.volume_up()
    elif key == "d":
        controller.volume_down()
    elif key == "f":
        controller.rseek(SEEK_STEP)
    elif key == "b":
        controller.rseek(-SEEK_STEP)
    elif key in (" ", "p"):
        controller.toggle_pause()
    elif key == "s":
        controller.stop()
    elif key == "q":
        print(_status_line(controller))
    else:
        print(HELP)
    return True


def _read_stdin(loop: asyncio.AbstractEventLoop, queue: asyncio.Queue, stream: Optional[TextIO] = None) -> None:
    """Push one key at a time; None marks end of input."""
    stream = stream or sys.stdin
    while True:
        key = stream.read(1)
        if not key:
            break
        if key not in "\r\n":
            loop.call_soon_threadsafe(queue.put_nowait, key)
    loop.call_soon_threadsafe(queue.put_nowait, None)


@contextlib.contextmanager
def _cbreak(stream: TextIO) -> Iterator[None]:
    """Deliver keystrokes without waiting for Enter while a terminal is attached."""
    if sys.platform == "win32" or not stream.isatty():
        yield
        return
    import termios
    import tty

    fd = stream.fileno()
    saved = termios.tcgetattr(fd)
    tty.setcbreak(fd)
    try:
        yield
    finally:
        termios.tcsetattr(fd, termios.TCSADRAIN, saved)


async def _run(config: ConnectionConfig) -> int:
    try:
        conn = await CastConnection.open(config)
    except ConnectError as e:
        print(f"Cannot reach {config.host}:{config.port}: {e}", file=sys.stderr)
        return 1

    controller = CastController(conn, on_status_change=lambda c: print(_status_line(c)))
    controller.start()
    print(HELP)

    loop = asyncio.get_running_loop()
    keys: asyncio.Queue = asyncio.Queue()
    closed = asyncio.create_task(conn.wait_closed())
    try:
        with _cbreak(sys.stdin):
            threading.Thread(target=_read_stdin, args=(loop, keys), daemon=True).start()
            while True:
                next_key = asyncio.create_task(keys.get())
                done, _ = await asyncio.wait({next_key, closed}, return_when=asyncio.FIRST_COMPLETED)
                if closed in done:
                    next_key.cancel()
                    print(f"Connection lost: {conn.close_reason}", file=sys.stderr)
                    return 1
                key = next_key.result()
                if key is None:
                    return 0
                try:
                    if not _handle_key(controller, key):
                        return 0
                except CastError as e:
                    logger.error("Command %r failed: %s", key, e)
    finally:
        controller.close()
        conn.close()
        closed.cancel()


def main(argv: Optional[list[str]] = None) -> None:
    args = _parse_args(argv)
    if args.config:
        config = load_config(args.config, host=args.host, port=args.port)
    else:
        config = Config(cast=ConnectionConfig(host=args.host or "", port=args.port or 8009))
    if args.debug:
        config.logging.level = "DEBUG"

    errors = config.validate()
    if errors:
        for err in errors:
            print(err, file=sys.stderr)
        sys.exit(2)

    setup_rotating_logger("castlink", Path(config.logging.log_dir), config.logging.level_no)
    logger.info("castlink starting (%s:%d)", config.cast.host, config.cast.port)
    sys.exit(asyncio.run(_run(config.cast)))


if __name__ == "__main__":
    main()
