from dataclasses import dataclass
from typing import Optional, TextIO

ACCEPT_ANSWERS = {"y", "yes"}


@dataclass(frozen=True)
class PromptResult:
    accepted: bool
    cancelled: bool = False


DECLINED = PromptResult(accepted=False)
ACCEPTED = PromptResult(accepted=True)
CANCELLED = PromptResult(accepted=False, cancelled=True)


def _is_tty(stream: TextIO) -> bool:
    isatty = getattr(stream, "isatty", None)
    if isatty is None:
        return False
    try:
        return bool(isatty())
    except (OSError, ValueError):
        return False


def confirm(message: str, reader: TextIO, writer: TextIO, interactive: Optional[bool] = None) -> PromptResult:
    """Ask a yes/no question; anything but ``y``/``yes`` declines.

    Non-interactive input declines without reading. A read error is reported
    as cancelled so callers can tell a broken terminal from a plain "no".
    """
    if interactive is None:
        interactive = _is_tty(reader)
    if not interactive:
        return DECLINED

    writer.write(f"{message} [y/N]: ")
    writer.flush()
    try:
        line = reader.readline()
    except (OSError, ValueError):
        return CANCELLED
    answer = line.strip().lower()
    if answer in ACCEPT_ANSWERS:
        return ACCEPTED
    return DECLINED
