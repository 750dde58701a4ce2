import os
import re

# ${NAME}, ${NAME:-default} or ${NAME:?message}
_PLACEHOLDER = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?:(:-|:\?)([^}]*))?\}")


def _resolve(match: re.Match[str], line_no: int) -> str:
    name, operator, argument = match.groups()
    value = os.environ.get(name)

    if operator == ":-":
        # Shell semantics: an empty value also falls back to the default
        return value if value else argument
    if value is not None:
        return value
    if operator == ":?":
        raise ValueError(f"Required environment variable {name} (line {line_no}): {argument}")
    raise ValueError(f"Required environment variable {name} not set (line {line_no})")


def substitute_env_vars(text: str) -> str:
    """
    Substitute environment variable placeholders in YAML text.

    Supports formats:
    - ${VAR_NAME} - required variable (raises error if missing)
    - ${VAR_NAME:-default} - default when unset or empty
    - ${VAR_NAME:?error_message} - required with custom error message

    Comment lines are copied unchanged, so documentation inside the file may
    mention placeholders.

    Raises:
        ValueError: If a required variable is not set
    """
    lines = text.splitlines(keepends=True)
    for index, line in enumerate(lines):
        if line.lstrip().startswith("#") or "${" not in line:
            continue
        line_no = index + 1
        lines[index] = _PLACEHOLDER.sub(lambda m: _resolve(m, line_no), line)
    return "".join(lines)
