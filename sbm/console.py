"""Terminal output helpers and operator prompts."""
from __future__ import annotations

import os
import sys

# ANSI color codes (respect NO_COLOR convention: https://no-color.org)
if os.environ.get("NO_COLOR") is not None:
    GREEN = RED = YELLOW = BLUE = RESET = ""
else:
    GREEN = "\033[32m"
    RED = "\033[31m"
    YELLOW = "\033[33m"
    BLUE = "\033[34m"
    RESET = "\033[0m"

RULE = "=" * 60


def info(message: str) -> None:
    print(f"{BLUE}[INFO]{RESET} {message}")


def success(message: str) -> None:
    print(f"{GREEN}[OK]{RESET} {message}")


def warning(message: str) -> None:
    print(f"{YELLOW}[WARNING]{RESET} {message}")


def error(message: str) -> None:
    print(f"{RED}[ERROR]{RESET} {message}", file=sys.stderr)


def step(title: str) -> None:
    print(f"\n{RULE}")
    print(f"{BLUE}STEP: {title}{RESET}")


class Prompter:
    """Asks the operator questions; without a terminal it answers with the defaults.

    ``interactive=False`` never blocks: confirm() returns its default and
    ask() returns its default. Ctrl-C or a closed stdin at a prompt raises
    KeyboardInterrupt so the caller can stop before its next step.
    """

    def __init__(self, interactive: bool = True):
        self.interactive = interactive

    def _input(self, text: str) -> str:
        try:
            return input(text)
        except (EOFError, KeyboardInterrupt):
            print()
            raise KeyboardInterrupt from None

    def confirm(self, prompt: str, default: bool = False) -> bool:
        if not self.interactive:
            return default
        hint = "[Y/n]" if default else "[y/N]"
        answer = self._input(f"{prompt} {hint} ").strip().lower()
        if not answer:
            return default
        return answer in ("y", "yes")

    def ask(self, prompt: str, default: str = "") -> str:
        if not self.interactive:
            return default
        suffix = f" [{default}]" if default else ""
        answer = self._input(f"{prompt}{suffix}: ").strip()
        return answer or default
