from __future__ import annotations

from html import escape

from gsdrun.state.model import TranscriptEntry

_STYLE = (
    "body{font-family:monospace;padding:2em;max-width:900px;margin:auto}"
    "pre{background:#f4f4f4;padding:1em;overflow-x:auto;border-radius:4px}"
    ".failed{color:#b00020}"
)


def render_transcript_html(entry: TranscriptEntry) -> str:
    """Render one transcript entry as a standalone HTML page."""
    step_id = escape(entry.step_id)
    lines = [
        "<!DOCTYPE html>",
        f"<html><head><meta charset=\"utf-8\"><title>Step: {step_id}</title>",
        f"<style>{_STYLE}</style>",
        "</head><body>",
        f"<h1>Step: {step_id}</h1>",
        f"<p>Attempt: {entry.attempt} | Duration: {entry.duration_sec}s | "
        f"Units (est): {entry.consumed_units} | {escape(entry.timestamp)}</p>",
    ]
    if not entry.ok:
        lines.append(f"<p class=\"failed\">Failed: {escape(entry.error or 'unknown error')}</p>")
    lines.extend(
        [
            "<h2>Prompt</h2>",
            f"<pre>{escape(entry.prompt)}</pre>",
            "<h2>Response</h2>",
            f"<pre>{escape(entry.response)}</pre>",
            "</body></html>",
        ]
    )
    return "\n".join(lines) + "\n"
