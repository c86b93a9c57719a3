from __future__ import annotations

import json
from typing import Any, Dict, Mapping, Optional


def embed_script(
    server_url: str,
    *,
    chatflow_id: str = "proxy",
    chatflow_config: Optional[Mapping[str, Any]] = None,
    full_page: bool = False,
) -> str:
    """HTML snippet that loads the widget bundle from the gateway."""
    options: Dict[str, Any] = {"chatflowid": chatflow_id, "apiHost": server_url}
    if chatflow_config:
        options["chatflowConfig"] = dict(chatflow_config)
    init = "initFull" if full_page else "init"
    rendered = json.dumps(options, indent=4)
    script = (
        '<script type="module">\n'
        f"    import Chatbot from '{server_url}/web.js'\n"
        f"    Chatbot.{init}({rendered})\n"
        "</script>"
    )
    if full_page:
        return "<flowise-fullchatbot></flowise-fullchatbot>\n" + script
    return script


def embed_module(
    server_url: str,
    identifier: str,
    chatflow_config: Optional[Mapping[str, Any]] = None,
) -> str:
    """JavaScript module body served by the per-tenant embed endpoint."""
    options: Dict[str, Any] = {"chatflowid": identifier, "apiHost": server_url}
    if chatflow_config:
        options["chatflowConfig"] = dict(chatflow_config)
    return (
        f"import Chatbot from '{server_url}/web.js';\n"
        f"Chatbot.init({json.dumps(options)});\n"
    )
