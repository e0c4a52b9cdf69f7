"""
Utilities for string interpolation using environment variables.
"""
import logging
import re
from typing import Any, Dict

LOG = logging.getLogger(__name__)

# Group 1: "$$" escape
# Group 2: braced VAR name, group 3: modifier, group 4: modifier argument
# Group 5: bare $VAR name
_PATTERN = re.compile(
    r'\$(?:(\$)'
    r'|\{([A-Za-z_][A-Za-z0-9_]*)(?:(:?[-+?])([^}]*))?\}'
    r'|([A-Za-z_][A-Za-z0-9_]*))'
)


class EnvironmentInterpolator:
    """
    Utility for interpolating environment variables in strings.
    Supports $VAR, ${VAR}, ${VAR:-default}, ${VAR-default}, ${VAR:+value},
    ${VAR+value}, ${VAR:?error}, ${VAR?error} and $$ as a literal dollar.
    """
    @staticmethod
    def interpolate(template: str, context: Dict[str, str]) -> str:
        """
        Interpolates environment variables in the template string using the provided context.

        :param template: The string containing $VAR or ${VAR} placeholders.
        :param context: The environment variables context.
        :return: The interpolated string.
        :raises KeyError: If a ${VAR?error} or ${VAR:?error} variable is missing.
        """
        def replace(match):
            if match.group(1):
                return '$'

            var_name = match.group(2) or match.group(5)
            modifier = match.group(3)
            alt_value = match.group(4) or ''

            value = context.get(var_name)
            # The colon forms treat an empty value like an unset one.
            present = bool(value) if modifier and modifier.startswith(':') else value is not None

            if modifier in (':-', '-'):
                return value if present else alt_value
            if modifier in (':+', '+'):
                return alt_value if present else ''
            if modifier in (':?', '?'):
                if not present:
                    raise KeyError(alt_value or f"required variable {var_name} is missing a value")
                return value

            if value is None:
                LOG.warning("The %s variable is not set. Defaulting to a blank string.", var_name)
                return ''
            return value

        return _PATTERN.sub(replace, template)

    @classmethod
    def interpolate_data(cls, data: Any, context: Dict[str, str]) -> Any:
        """
        Interpolates every string found in a parsed YAML structure. Mapping keys are left as-is.
        """
        if isinstance(data, str):
            return cls.interpolate(data, context)
        if isinstance(data, dict):
            return {key: cls.interpolate_data(value, context) for key, value in data.items()}
        if isinstance(data, list):
            return [cls.interpolate_data(item, context) for item in data]
        return data
