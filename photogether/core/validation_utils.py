"""
Validation utilities for wire payloads.
Centralizes field checks shared by the signaling codec and the sticker sync layer.
"""

from typing import Any, Dict, List, Optional, Tuple, Type, Union


class ValidationUtils:
    """Common validation utilities."""

    @staticmethod
    def validate_required_fields(data: Dict[str, Any], required_fields: List[str]) -> Optional[str]:
        """Validate that all required fields are present in the data."""
        missing_fields = [field for field in required_fields if field not in data or data[field] is None]
        if missing_fields:
            return f"Missing required fields: {', '.join(missing_fields)}"
        return None

    @staticmethod
    def validate_field_types(data: Dict[str, Any],
                             field_types: Dict[str, Union[Type, Tuple[Type, ...]]]) -> Optional[str]:
        """Validate the types of fields that are present and not None."""
        for name, expected in field_types.items():
            value = data.get(name)
            if value is None:
                continue
            # bool is an int subclass; never accept it as a number
            if isinstance(value, bool) and bool not in (expected if isinstance(expected, tuple) else (expected,)):
                return f"Field '{name}' has invalid type bool"
            if not isinstance(value, expected):
                return f"Field '{name}' has invalid type {type(value).__name__}"
        return None

    @staticmethod
    def validate_string_list(data: Dict[str, Any], field: str) -> Optional[str]:
        """Validate that a field holds a list of strings."""
        value = data.get(field)
        if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
            return f"Field '{field}' must be a list of strings"
        return None
