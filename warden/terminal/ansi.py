import re

_ESCAPE_RE = re.compile(
    r"(?:\x9b|\x1b\[)[0-9:;<>=?]*[ -/]*[@-~]"  # CSI
    r"|\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)"  # OSC, BEL or ST terminated
    r"|\x1b[PX^_].*?\x1b\\"  # DCS / SOS / PM / APC
    r"|\x1b[()][0-9A-Za-z]"  # charset designation
    r"|\x1b[^\[\]PX^_()]",
    re.DOTALL,
)
_CONTROL_RE = re.compile(r"[\x00-\x08\x0b-\x1f\x7f]")


def strip_ansi(text: str) -> str:
    text = _ESCAPE_RE.sub("", text)
    text = text.replace("\r\n", "\n")
    return _CONTROL_RE.sub("", text)


def tail_lines(text: str, count: int) -> list[str]:
    lines = [line for line in text.split("\n") if line.strip()]
    return lines[-count:]
