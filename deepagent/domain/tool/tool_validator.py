from typing import Any, Dict, List, NamedTuple

import jsonschema
from jsonschema.validators import validator_for

from deepagent.domain.models.errors import ConfigurationError
from deepagent.domain.tool.tool_registry import Tool


class ValidationResult(NamedTuple):
    is_valid: bool
    errors: List[str]


# Parameter validation
class ToolParameterValidator:
    @staticmethod
    def check_schema(item: Tool):
        """Reject a tool whose declared parameter schema is itself invalid"""

        cls = validator_for(item.parameters)
        try:
            cls.check_schema(item.parameters)
        except jsonschema.SchemaError as e:
            raise ConfigurationError(
                f"Tool '{item.name}' declares an invalid parameter schema: {e.message}",
                tool_name=item.name
            ) from e

    @staticmethod
    def validate_tool_call(item: Tool, parameters: Dict[str, Any]) -> ValidationResult:
        schema = item.parameters

        if not isinstance(parameters, dict):
            return ValidationResult(False, [f"Arguments must be an object, got {type(parameters).__name__}"])

        # JSON Schema validation
        validator = validator_for(schema)(schema)
        errors = []
        for error in sorted(validator.iter_errors(parameters), key=lambda e: list(e.absolute_path)):
            location = "/".join(str(part) for part in error.absolute_path)
            errors.append(f"{location}: {error.message}" if location else error.message)

        if errors:
            return ValidationResult(False, errors)

        # Custom business logic validation
        custom_validation = getattr(item, "custom_validation", None)
        if custom_validation is not None:
            custom_errors = custom_validation(parameters)
            if custom_errors:
                return ValidationResult(False, list(custom_errors))

        return ValidationResult(True, [])
