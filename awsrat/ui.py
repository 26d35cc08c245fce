"""Terminal output and selection menus."""
from __future__ import annotations

import sys
from typing import Callable, List, Sequence, TypeVar

from colorama import Fore, Style, init
from simple_term_menu import TerminalMenu

from awsrat.errors import SelectionCancelled

init(autoreset=True)

T = TypeVar("T")

GO_BACK = "🔙 Go back"


# ----------------------------------------------------------------------------
# Color theme
# ----------------------------------------------------------------------------
class Colors:
    # Status
    RUNNING = Fore.GREEN
    STOPPED = Fore.RED
    PENDING = Fore.YELLOW
    WARNING = Fore.YELLOW
    ERROR = Fore.RED
    SUCCESS = Fore.GREEN
    INFO = Fore.CYAN

    # UI elements
    HEADER = Style.BRIGHT + Fore.WHITE
    HIGHLIGHT = Style.BRIGHT
    PROMPT = Fore.CYAN
    RESET = Style.RESET_ALL


def colored_text(text: str, color: str = "") -> str:
    """Return text wrapped in a color code."""
    if color:
        return f"{color}{text}{Colors.RESET}"
    return text


def get_status_color(status: str) -> str:
    """Color for a resource or deployment status."""
    status_lower = (status or "").lower()
    if status_lower in ['running', 'available', 'active', 'completed']:
        return Colors.RUNNING
    elif status_lower in ['stopped', 'terminated', 'inactive', 'failed']:
        return Colors.STOPPED
    elif status_lower in ['pending', 'starting', 'stopping', 'in_progress']:
        return Colors.PENDING
    return ""


def info(message: str) -> None:
    print(colored_text(message, Colors.INFO))


def success(message: str) -> None:
    print(colored_text(message, Colors.SUCCESS))


def warn(message: str) -> None:
    print(colored_text(message, Colors.WARNING))


def error(message: str) -> None:
    print(colored_text(message, Colors.ERROR))


# ----------------------------------------------------------------------------
# Arrow-key menus (simple-term-menu, numbered input fallback)
# ----------------------------------------------------------------------------
def _shortcut(i: int) -> str:
    # 1-9, 0, then a-z; nothing past the 36th item
    if i < 9:
        return f"[{i + 1}]"
    if i == 9:
        return "[0]"
    if i < 36:
        return f"[{chr(ord('a') + i - 10)}]"
    return "   "


def interactive_select(items: List[str], title: str = "", show_index: bool = True) -> int:
    """
    Arrow-key navigation menu.

    Args:
        items: entries to display
        title: menu title
        show_index: show numbered shortcuts in front of entries

    Returns:
        selected index (0-based), -1 when cancelled
    """
    if not items:
        return -1

    if not (sys.stdin.isatty() and sys.stdout.isatty()):
        return _fallback_menu(items, title, show_index)

    display_items = [f"{_shortcut(i)}   {item}" if show_index else item
                     for i, item in enumerate(items)]
    styled_title = None
    if title:
        line = '═' * 70
        styled_title = f"\n{line}\n    {title}\n{line}\n"

    try:
        menu = TerminalMenu(
            display_items,
            title=styled_title,
            menu_cursor="  ▶ ",
            menu_cursor_style=("fg_cyan", "bold"),
            menu_highlight_style=("standout", "bold"),
            search_key="/",
            quit_keys=("escape", "q"),
            clear_screen=False,
            shortcut_key_highlight_style=("fg_cyan", "bold"),
            shortcut_brackets_highlight_style=("fg_gray",),
        )
        result = menu.show()
    except (OSError, NotImplementedError) as e:
        print(colored_text(f"\n⚠️ Menu initialisation failed, switching to numbered input: {e}", Colors.WARNING))
        return _fallback_menu(items, title, show_index)
    return result if result is not None else -1


def _fallback_menu(items: List[str], title: str = "", show_index: bool = True) -> int:
    """Numbered menu used when no terminal is attached."""
    if title:
        print(colored_text(f"\n{title}", Colors.HEADER))
        print("-" * 40)

    for i, item in enumerate(items):
        if show_index:
            print(f"  {i + 1}) {item}")
        else:
            print(f"  {item}")

    print()
    try:
        sel = input(colored_text("Select (number, q=cancel): ", Colors.PROMPT)).strip()
    except EOFError:
        return -1

    if sel.lower() in ('q', 'b') or not sel:
        return -1

    if sel.isdigit():
        idx = int(sel) - 1
        if 0 <= idx < len(items):
            return idx

    return -1


def select_one(
    options: Sequence[T],
    label: Callable[[T], str],
    title: str,
    what: str,
) -> T:
    """
    Let the operator pick one of ``options``.

    A "Go back" entry is always appended. Going back, cancelling or an empty
    option list raises ``SelectionCancelled`` so callers never continue with
    an unresolved choice.
    """
    if not options:
        raise SelectionCancelled(what, "nothing to choose from")

    items = [label(o) for o in options]
    items.append(GO_BACK)
    sel = interactive_select(items, title=title)
    if sel == -1 or sel >= len(options):
        raise SelectionCancelled(what)
    return options[sel]


def confirm(prompt: str, default: bool = False) -> bool:
    """Ask a y/n question. Empty input or EOF gives ``default``."""
    suffix = "(Y/n)" if default else "(y/N)"
    try:
        answer = input(colored_text(f"{prompt} {suffix}: ", Colors.PROMPT)).strip().lower()
    except EOFError:
        return default
    if not answer:
        return default
    return answer.startswith('y')


def ask(prompt: str) -> str:
    """Free-text prompt. EOF gives an empty string."""
    try:
        return input(colored_text(prompt, Colors.PROMPT)).strip()
    except EOFError:
        return ""


def pause(prompt: str = "Press Enter to continue...") -> None:
    try:
        input(colored_text(prompt, Colors.PROMPT))
    except EOFError:
        pass
