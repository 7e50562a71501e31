import re
from typing import Any, Dict

MAX_OUTPUT_LENGTH = 20000

_ANSI_ESCAPE = re.compile(r"\x1B(?:[@-Z\\-_]|\[[0-?]*[ -/]*[@-~])")


def strip_ansi(text: str) -> str:
    return _ANSI_ESCAPE.sub("", text)


def truncate_output(text: str, max_length: int = MAX_OUTPUT_LENGTH) -> str:
    """
    Keep the head and tail of oversized text with a notice in between.

    Returns the original text when it is within ``max_length``.
    """
    if len(text) <= max_length:
        return text

    chars_removed = len(text) - max_length
    head_size = max_length // 2
    tail_size = max_length - head_size
    truncation_msg = f"\n\n... [Truncated {chars_removed:,} characters] ...\n\n"
    return text[:head_size] + truncation_msg + text[-tail_size:]


def render_output(output: Dict[str, Any]) -> str:
    """Plain-text rendering of one nbformat output for terminals."""
    output_type = output.get("output_type")
    if output_type == "stream":
        return output.get("text", "")
    if output_type == "error":
        traceback = output.get("traceback") or [f"{output.get('ename')}: {output.get('evalue')}"]
        return strip_ansi("\n".join(traceback)) + "\n"

    data = output.get("data", {})
    if "text/plain" in data:
        text = data["text/plain"]
    else:
        mime_types = ", ".join(sorted(data)) or "no data"
        text = f"<{output_type}: {mime_types}>"
    return text if text.endswith("\n") else text + "\n"
