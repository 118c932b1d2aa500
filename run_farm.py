#!/usr/bin/env python3
"""Keep a farm account tended unattended.

Logs in to the farm gateway with a login code and runs the own-farm, friend
patrol, task and warehouse loops until the session ends.

Credential precedence: --code, then the CODE environment variable, then the
code saved in .farmcode by an earlier successful run, then an interactive
prompt. A saved or given code that the server rejects is deleted and, when
stdin is a terminal, a fresh code is asked for once.

Logs are written under --log_dir (./logs by default) and echoed to stderr.

Usage:
  # Log in with a code from the mini program's login()
  python run_farm.py --code=abc123 --interval=15 --friend_interval=2

  # Environment variables work too (flags win)
  CODE=abc123 INTERVAL=15 FRIEND_INTERVAL=2 python run_farm.py

  # Check the message catalogue
  python run_farm.py --verify

  # Decode a captured frame
  python run_farm.py --decode=<base64> --gate
  python run_farm.py --decode=<hex> --hex --type=AllLandsReply
"""

import asyncio
import os
import signal
import sys
from typing import Optional, Set, Tuple

from absl import app, flags, logging
import termcolor

from qqfarm.harness.code_store import DEFAULT_CODE_FILE, CodeStore
from qqfarm.harness.farm.config import PLATFORMS, FarmBotConfig
from qqfarm.harness.farm_decode_tool import (decode_payload, format_decoded,
                                             parse_payload, verify_schema)
from qqfarm.harness.farm_errors import FarmError
from qqfarm.harness.farm_pilot import FarmPilot
from qqfarm.harness.farm_session import Connector, Disconnected, LoginFailed

colored = termcolor.colored

FLAGS = flags.FLAGS

DEFAULT_LOG_DIR = "logs"

# Command line flags
_CODE = flags.DEFINE_string(
    "code", None, "Login code returned by the mini program's login()"
)
_WX = flags.DEFINE_boolean(
    "wx", False, "Log in as a WeChat mini program (default is QQ)"
)
_INTERVAL = flags.DEFINE_integer(
    "interval", None, "Seconds to wait after an own-farm pass (default 10, min 1)"
)
_FRIEND_INTERVAL = flags.DEFINE_integer(
    "friend_interval", None,
    "Seconds to wait after a friend patrol pass (default 1, min 1)"
)
_CODE_FILE = flags.DEFINE_string(
    "code_file", DEFAULT_CODE_FILE, "Where the last working code is saved"
)
_VERIFY = flags.DEFINE_boolean(
    "verify", False, "Check the message catalogue and exit"
)
_DECODE = flags.DEFINE_string(
    "decode", None, "Decode a base64 (or --hex) payload and exit"
)
_HEX = flags.DEFINE_boolean("hex", False, "The --decode payload is hex")
_GATE = flags.DEFINE_boolean(
    "gate", False, "The --decode payload is a full gate frame"
)
_TYPE = flags.DEFINE_string(
    "type", None, "Message type of the --decode payload (or of its gate body)"
)


def _env_int(name: str) -> Optional[int]:
    try:
        return int(os.environ.get(name, "")) or None
    except ValueError:
        return None


def build_config(
    wx: bool = False,
    interval: Optional[int] = None,
    friend_interval: Optional[int] = None,
) -> FarmBotConfig:
    """Flag values override environment variables, which override defaults."""
    config = FarmBotConfig.from_env()

    platform = os.environ.get("PLATFORM")
    if platform not in PLATFORMS:
        platform = "qq"
    if wx:
        platform = "wx"
    config = config.with_platform(platform)

    return config.with_intervals(
        farm_seconds=interval or _env_int("INTERVAL"),
        friend_seconds=friend_interval or _env_int("FRIEND_INTERVAL"),
    )


def setup_logging() -> None:
    """Sends absl logs to a file under --log_dir and keeps INFO on stderr."""
    log_dir = FLAGS.log_dir or DEFAULT_LOG_DIR
    try:
        os.makedirs(log_dir, exist_ok=True)
        logging.get_absl_handler().use_absl_log_file("qqfarm", log_dir)
    except OSError as e:
        logging.warning("Cannot log to %s, using stderr only: %s", log_dir, e)
        return
    if not FLAGS["stderrthreshold"].present:
        FLAGS.stderrthreshold = "info"
    logging.info("Logging to %s", log_dir)


def prompt_for_code() -> Optional[str]:
    """Asks for a fresh code on an interactive terminal."""
    if not sys.stdin.isatty():
        return None
    try:
        code = input(colored("Login code: ", "cyan")).strip()
    except EOFError:
        return None
    return code or None


def resolve_credential(
    store: CodeStore, platform: str, code: Optional[str] = None
) -> Tuple[Optional[str], str]:
    """Picks the login code to try first.

    Returns:
      (code, source) with source one of flag, env, saved, prompt. A prompt
      source comes with no code; the caller asks for one.
    """
    if code:
        return code, "flag"
    if os.environ.get("CODE"):
        return os.environ["CODE"], "env"
    # Saved codes are only reused for QQ logins
    if platform == "qq":
        saved = store.load()
        if saved:
            print(colored("Found a saved code, trying it first", "blue"))
            return saved, "saved"
    return None, "prompt"


def _preview(code: str) -> str:
    return code[:8] + "..." if code else "(empty)"


class FarmRunner:
    """Runs one account until the session ends, asking for codes as needed."""

    def __init__(
        self,
        config: FarmBotConfig,
        store: CodeStore,
        connector: Optional[Connector] = None,
    ):
        self.config = config
        self.store = store
        self.pilot = FarmPilot(config, connector=connector)
        self._stopping = asyncio.Event()
        self._shutdown_tasks: Set[asyncio.Task] = set()

    def request_shutdown(self) -> None:
        """Stops the loops and closes the session. Safe to call repeatedly."""
        if self._stopping.is_set():
            return
        print(colored("Shutting down...", "yellow"))
        self._stopping.set()
        task = asyncio.ensure_future(self.pilot.shutdown())
        self._shutdown_tasks.add(task)
        task.add_done_callback(self._shutdown_tasks.discard)

    async def prompt(self) -> Optional[str]:
        """Asks for a code without blocking the event loop.

        Returns None if no code was given or shutdown was requested meanwhile.
        """
        answer = asyncio.ensure_future(asyncio.to_thread(prompt_for_code))
        stopped = asyncio.ensure_future(self._stopping.wait())
        done, _ = await asyncio.wait(
            {answer, stopped}, return_when=asyncio.FIRST_COMPLETED
        )
        stopped.cancel()
        if answer in done:
            return answer.result()
        # input() cannot be interrupted; the thread ends with the next line
        print(colored("\nPress Enter to exit", "yellow"))
        return None

    async def run(self, code: Optional[str] = None) -> int:
        """Returns the exit status: 0 after a client close, 1 otherwise."""
        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, self.request_shutdown)
        except (NotImplementedError, RuntimeError, ValueError):
            logging.warning("SIGINT handler unavailable on this platform")
        try:
            return await self._run(code)
        finally:
            try:
                loop.remove_signal_handler(signal.SIGINT)
            except (NotImplementedError, RuntimeError, ValueError):
                pass
            if self._shutdown_tasks:
                await asyncio.gather(*self._shutdown_tasks)

    async def _run(self, code: Optional[str]) -> int:
        platform = self.config.connection.platform
        code, source = resolve_credential(self.store, platform, code)
        if not code:
            code = await self.prompt()
        if self._stopping.is_set():
            return 0
        if not code:
            print(colored("No login code: pass --code or set CODE", "red"))
            return 1

        retried = False
        while True:
            loops = self.config.loops
            print(colored(
                f"Starting: {platform.upper()} code={_preview(code)} "
                f"farm {loops.farm_check_interval:.0f}s "
                f"friends {loops.friend_check_interval:.0f}s", "blue"))

            def on_success(code=code):
                print(colored(f"Logged in as {self.pilot.cache.profile.name}", "green"))
                self.store.save(code)

            def on_error(error):
                print(colored(f"Login failed: {error}", "yellow"))

            event = await self.pilot.run(code, on_success=on_success, on_error=on_error)

            if isinstance(event, Disconnected):
                if event.by_client:
                    print(colored("Disconnected, bye", "green"))
                    return 0
                print(colored(f"Connection lost ({event.code}): {event.reason}", "red"))
                return 1

            if isinstance(event, LoginFailed):
                if source != "prompt":
                    self.store.delete()
                if retried or source == "prompt":
                    return 1
                retried = True
                code, source = await self.prompt(), "prompt"
                if self._stopping.is_set():
                    return 0
                if not code:
                    return 1


def main(argv):
    """Main entry point."""
    if len(argv) > 1:
        print("Usage: python run_farm.py [flags]")
        return 1

    if _VERIFY.value:
        try:
            for line in verify_schema():
                print(line)
        except FarmError as e:
            print(colored(f"Catalogue check failed: {e}", "red"))
            return 1
        print(colored("Catalogue OK", "green"))
        return 0

    if _DECODE.value:
        try:
            payload = parse_payload(_DECODE.value, hex_input=_HEX.value)
            decoded = decode_payload(payload, _TYPE.value, gate=_GATE.value)
        except (FarmError, ValueError) as e:
            print(colored(f"Decode failed: {e}", "red"))
            return 1
        print(format_decoded(decoded))
        return 0

    config = build_config(_WX.value, _INTERVAL.value, _FRIEND_INTERVAL.value)
    try:
        config.validate()
    except ValueError as e:
        print(colored(f"Invalid configuration: {e}", "red"))
        return 1

    setup_logging()

    async def run():
        runner = FarmRunner(config, CodeStore(_CODE_FILE.value))
        return await runner.run(_CODE.value)

    return asyncio.run(run())


if __name__ == "__main__":
    app.run(main)
