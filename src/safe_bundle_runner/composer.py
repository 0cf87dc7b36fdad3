"""Assemble fragment bundles into documents or sandbox sources.

Fragments are opaque text: nothing is escaped or validated here, so any
sanitization policy belongs to the caller.
"""

from __future__ import annotations

from .execution.interpreters import InterpreterProfile
from .execution.types import ExecutionRequest, SandboxSource, StaticDocument


def render_document(request: ExecutionRequest) -> str:
    """Render the static HTML document for a bundle.

    Example:
        ```python
        html = render_document(ExecutionRequest(markup="<p>hi</p>"))
        ```
    """
    return (
        "<!DOCTYPE html>\n"
        '<html lang="en">\n'
        "<head>\n"
        '    <meta charset="UTF-8">\n'
        '    <meta name="viewport" content="width=device-width, initial-scale=1.0">\n'
        f"    <title>{request.title}</title>\n"
        "    <style>\n"
        f"{request.style}\n"
        "    </style>\n"
        "</head>\n"
        "<body>\n"
        f"{request.markup}\n"
        "    <script>\n"
        f"{request.client_script}\n"
        "    </script>\n"
        "</body>\n"
        "</html>"
    )


def compose(request: ExecutionRequest, profile: InterpreterProfile) -> StaticDocument | SandboxSource:
    """Compose a bundle into a static document or a sandbox source file.

    The sandbox source is always the server script followed by the profile
    trailer; callers replaying recorded bundles rely on that order.

    Example:
        ```python
        artifact = compose(ExecutionRequest(server_script="<?php echo 'ok'; ?>"), profile_for_interpreter("php"))
        ```
    """
    document = render_document(request)
    if not profile.has_server_code(request.server_script):
        return StaticDocument(html=document)
    script = request.server_script
    source = script + profile.trailer(script, document)
    return SandboxSource(
        source=source.encode("utf-8"),
        suffix=profile.source_suffix,
        interpreter=profile.name,
    )
