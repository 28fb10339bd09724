"""HTML helpers for Siren's dev server.

Functions:
    reload_script: The client snippet that listens for reload messages.
    inject_before_body_end: Insert markup before ``</body>`` (or append it).
"""

from __future__ import annotations

import re

_BODY_END_RE = re.compile(r"</body\s*>", re.IGNORECASE)

_RELOAD_SCRIPT_TEMPLATE = """
<script>
(() => {{
  const connect = () => {{
    const ws = new WebSocket('ws://' + location.hostname + ':{ws_port}');
    ws.onmessage = (event) => {{
      const data = JSON.parse(event.data || '{{}}');
      if (data.type === 'reload') location.reload();
    }};
    ws.onclose = () => setTimeout(connect, 1000);
  }};
  connect();
}})();
</script>
"""


def reload_script(ws_port: int) -> str:
    """Return the live reload client for a websocket port.

    The client reconnects after the dev server restarts.
    """
    return _RELOAD_SCRIPT_TEMPLATE.format(ws_port=ws_port)


def inject_before_body_end(html: str, snippet: str) -> str:
    """Insert snippet before the last ``</body>``, or append it if there is none.

    Examples:
        >>> inject_before_body_end("<body>hi</body>", "<x>")
        '<body>hi<x></body>'
    """
    matches = list(_BODY_END_RE.finditer(html))
    if not matches:
        return html + snippet
    last = matches[-1]
    return html[: last.start()] + snippet + html[last.start() :]
