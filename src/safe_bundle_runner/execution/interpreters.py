from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

PHP_OPEN_TAGS = ("<?php", "<?=", "<?")
PHP_CLOSE_TAG = "?>"


def _php_trailer(script: str, document: str) -> str:
    """Return text that closes PHP mode if needed and inlines the document.

    The open/closed check is lexical: a `?>` inside a string literal or
    comment after the last open tag counts as a close tag, so the trailer
    is appended without one.

    Example:
        ```python
        trailer = _php_trailer("<?php echo 1;", "<!DOCTYPE html>")
        ```
    """
    last_open = max(script.rfind(tag) for tag in PHP_OPEN_TAGS)
    last_close = script.rfind(PHP_CLOSE_TAG)
    # Inline HTML is echoed verbatim once the interpreter is outside a code block.
    if last_open > last_close:
        return f"\n{PHP_CLOSE_TAG}\n{document}"
    return f"\n{document}"


def _python_trailer(script: str, document: str) -> str:
    """Return a top-level statement writing the document to stdout.

    Example:
        ```python
        trailer = _python_trailer("print('ok')", "<!DOCTYPE html>")
        ```
    """
    return f"\nimport sys as _sbr_sys\n_sbr_sys.stdout.write({document!r})\n"


@dataclass(frozen=True, slots=True)
class InterpreterProfile:
    """Everything the composer and sandbox need to know about one interpreter.

    `opening_markers` decide whether a server script holds code at all; an
    empty tuple means any non-blank script does. `fatal_markers` are the
    stderr substrings that flip a clean exit into a runtime failure.

    Example:
        ```python
        profile = profile_for_interpreter("php")
        ```
    """

    name: str
    binary: str
    source_suffix: str
    trailer: Callable[[str, str], str]
    options: tuple[str, ...] = ()
    opening_markers: tuple[str, ...] = ()
    fatal_markers: tuple[str, ...] = ()

    def has_server_code(self, script: str) -> bool:
        """Return True when the script must go through the sandbox.

        Example:
            ```python
            profile.has_server_code("<?php echo 1; ?>")
            ```
        """
        if not script.strip():
            return False
        if not self.opening_markers:
            return True
        return any(marker in script for marker in self.opening_markers)

    def is_fatal(self, stderr: str) -> bool:
        """Return True when stderr carries a fatal or parse-level marker.

        Example:
            ```python
            profile.is_fatal("PHP Warning:  Undefined variable $x")  # False
            ```
        """
        return any(marker in stderr for marker in self.fatal_markers)


INTERPRETERS: dict[str, InterpreterProfile] = {
    "php": InterpreterProfile(
        name="php",
        binary="php",
        source_suffix=".php",
        trailer=_php_trailer,
        # php-cli prints diagnostics to stdout unless told otherwise.
        options=("-d", "display_errors=stderr", "-d", "log_errors=0", "-d", "html_errors=0"),
        opening_markers=PHP_OPEN_TAGS,
        fatal_markers=("Parse error", "Fatal error"),
    ),
    "python": InterpreterProfile(
        name="python",
        binary="python3",
        source_suffix=".py",
        trailer=_python_trailer,
        # -I ignores PYTHON* variables, so UTF-8 mode is set on the command line.
        options=("-I", "-B", "-X", "utf8"),
        fatal_markers=("Traceback (most recent call last)", "SyntaxError:"),
    ),
}


def profile_for_interpreter(name: str) -> InterpreterProfile:
    """Return the profile registered under `name`.

    Example:
        ```python
        profile = profile_for_interpreter("python")
        ```
    """
    try:
        return INTERPRETERS[name]
    except KeyError:
        supported = ", ".join(sorted(INTERPRETERS))
        raise ValueError(f"Unsupported interpreter '{name}' (supported: {supported})") from None
