# -----------------------------------------------------------------------------
# Definition Validator Module
#
# Validation for everything this project publishes: SSM command documents,
# the setup-status record and IAM identity requests. Problems are collected
# into errors and warnings; any error aborts the deployment.
# -----------------------------------------------------------------------------

import pulumi
import regex
from typing import Any, Iterable, List, Mapping, Set

PLACEHOLDER = regex.compile(r"\{\{\s*([^{}\s]+)\s*\}\}")
# Parameter Store references are resolved by SSM, not declared by the document.
EXTERNAL_REFERENCE_PREFIXES = ("ssm:", "ssm-secure:")
STATUS_KEY = regex.compile(r"^(/[A-Za-z0-9_.\-]+){3,}$")
INSTANCE_ID = regex.compile(r"^i-(?:[0-9a-f]{8}|[0-9a-f]{17})$")


def _report(kind: str, name: str, errors: List[str], warnings: List[str]) -> bool:
    """
    Log validation findings and raise on errors.

    Args:
        kind: What was validated, used in messages
        name: Name of the validated definition
        errors: Validation errors
        warnings: Validation warnings

    Returns:
        bool: True if validation passes (no errors)

    Raises:
        ValueError: If validation errors exist
    """
    if errors:
        error_message = f"{kind} '{name}' failed validation:\n- " + "\n- ".join(errors)
        pulumi.log.error(error_message)
        raise ValueError(error_message)

    if warnings:
        pulumi.log.warn(f"{kind} '{name}' validation warnings:\n- " + "\n- ".join(warnings))

    pulumi.log.info(f"Validation passed for {kind.lower()} '{name}'")
    return True


class SsmDocumentValidator:
    """
    Validator for AWS SSM command documents.

    Checks schema 2.2 structure, parameter definitions, step layout and that
    every ``{{ placeholder }}`` used by the steps is declared as a parameter.
    """

    valid_param_types = ["String", "StringList", "Boolean", "Integer", "MapList", "StringMap"]

    def validate_document(self, payload: dict, doc_name: str) -> bool:
        """
        Validate an SSM document against AWS requirements.

        Args:
            payload: The document content as a dictionary
            doc_name: The name of the document for error reporting

        Returns:
            bool: True if validation passes

        Raises:
            ValueError: If validation fails with specific error details
        """
        errors: List[str] = []
        warnings: List[str] = []

        self._validate_basic_fields(payload, errors, warnings)
        self._validate_parameters(payload, errors, warnings)
        self._validate_main_steps(payload, errors, warnings)
        self._validate_placeholders(payload, errors)

        return _report("SSM document", doc_name, errors, warnings)

    def _validate_basic_fields(self, payload, errors, warnings):
        if payload.get("schemaVersion") != "2.2":
            errors.append(
                f"Unsupported schemaVersion '{payload.get('schemaVersion')}'. Command documents must use 2.2"
            )

        if "description" not in payload:
            warnings.append("Missing 'description' field. Add a description to document")
        elif len(payload["description"]) < 10:
            warnings.append("Document description is too short. Add more detail.")

    def _validate_parameters(self, payload, errors, warnings):
        """
        Validate parameter definitions in the document.

        Args:
            payload: The document content dictionary
            errors: List to append any validation errors to
            warnings: List to append any validation warnings to
        """
        parameters = payload.get("parameters", {})
        if not isinstance(parameters, dict):
            errors.append("'parameters' must be an object")
            return

        for param_name, param_props in parameters.items():
            if not all(c.isalnum() or c in "_.:" for c in param_name):
                errors.append(
                    f"Parameter name '{param_name}' contains invalid characters. Use alphanumeric and _.:"
                )

            if not isinstance(param_props, dict):
                errors.append(f"Parameter '{param_name}' definition must be an object")
                continue

            param_type = param_props.get("type")
            if param_type is None:
                errors.append(f"Parameter '{param_name}' missing required field 'type'")
            elif param_type not in self.valid_param_types:
                errors.append(
                    f"Parameter '{param_name}' has invalid type '{param_type}'. "
                    f"Valid types are: {', '.join(self.valid_param_types)}"
                )

            if "description" not in param_props:
                warnings.append(f"Best practice: Add a description for parameter '{param_name}'")

            if "allowedValues" in param_props and (
                not isinstance(param_props["allowedValues"], list)
                or not param_props["allowedValues"]
            ):
                errors.append(
                    f"Parameter '{param_name}' has invalid allowedValues. Must be a non-empty array."
                )

            default_val = param_props.get("default")
            if default_val is not None and (
                (param_type == "Boolean" and not isinstance(default_val, bool))
                or (param_type == "Integer" and not isinstance(default_val, int))
                or (param_type == "String" and not isinstance(default_val, str))
            ):
                errors.append(
                    f"Parameter '{param_name}' default value doesn't match type {param_type}"
                )

    def _validate_main_steps(self, payload, errors, warnings):
        steps = payload.get("mainSteps")
        if steps is None:
            errors.append("Document with schemaVersion 2.2 requires 'mainSteps' field")
            return
        if not isinstance(steps, list):
            errors.append("'mainSteps' must be an array")
            return
        if not steps:
            errors.append("'mainSteps' array cannot be empty")
            return

        step_names: Set[str] = set()
        for i, step in enumerate(steps):
            if not isinstance(step, dict):
                errors.append(f"Step {i+1} must be an object")
                continue
            self._validate_step_name(step, i, step_names, errors)
            self._validate_step_action(step, i, errors, warnings)

    def _validate_step_name(self, step, index, step_names, errors):
        if "name" not in step:
            errors.append(f"Step {index+1} missing required field 'name'")
            return

        name = step["name"]
        if not all(c.isalnum() or c in "_-" for c in name):
            errors.append(
                f"Step '{name}' contains invalid characters. Use alphanumeric, underscore and hyphen"
            )
        elif name in step_names:
            errors.append(f"Duplicate step name: '{name}'. Step names must be unique.")
        else:
            step_names.add(name)

    def _validate_step_action(self, step, index, errors, warnings):
        """
        Validate the action, inputs and failure handling of one step.

        Args:
            step: The step definition to validate
            index: The index of the step in the steps array
            errors: List to append any validation errors to
            warnings: List to append any validation warnings to
        """
        step_name = step.get("name", f"step {index+1}")
        action = step.get("action")
        if action is None:
            errors.append(f"Step {index+1} missing required field 'action'")
            return

        on_failure = step.get("onFailure")
        if on_failure is None:
            warnings.append(f"Best practice: Specify 'onFailure' behavior for step '{step_name}'")
        elif on_failure not in ["Abort", "Continue"] and not (
            on_failure.startswith("step:") and len(on_failure) > 5
        ):
            warnings.append(
                f"Step '{step_name}' has potentially invalid onFailure value: '{on_failure}'"
            )

        if action != "aws:runShellScript":
            return

        inputs = step.get("inputs")
        if not isinstance(inputs, dict):
            errors.append(f"Step '{step_name}' with action '{action}' requires 'inputs' field")
            return
        if "timeoutSeconds" not in inputs:
            warnings.append(
                f"Best practice: Add 'timeoutSeconds' to step '{step_name}' to prevent hanging executions"
            )

        commands = inputs.get("runCommand")
        if not isinstance(commands, list) or not commands:
            errors.append(f"Step '{step_name}' requires a non-empty 'runCommand' in inputs")
            return
        if not any(cmd.strip().startswith("#!/") for cmd in commands):
            warnings.append(
                f"Best practice: Add shebang (#!/bin/bash) to shell script in step '{step_name}'"
            )
        if not any("set -e" in cmd for cmd in commands):
            warnings.append(
                f"Best practice: Add error handling (set -e) to shell script in step '{step_name}'"
            )

    def _validate_placeholders(self, payload, errors):
        declared = set(payload.get("parameters", {}) or {})
        for name in sorted(set(self.referenced_parameters(payload.get("mainSteps") or []))):
            if name.startswith(EXTERNAL_REFERENCE_PREFIXES):
                continue
            if name not in declared:
                errors.append(
                    f"Placeholder '{{{{ {name} }}}}' is used by a step but not declared in 'parameters'"
                )

    @classmethod
    def referenced_parameters(cls, node: Any) -> Iterable[str]:
        """Yield every placeholder name found in strings nested under *node*."""
        if isinstance(node, str):
            for match in PLACEHOLDER.finditer(node):
                yield match.group(1)
        elif isinstance(node, Mapping):
            for value in node.values():
                yield from cls.referenced_parameters(value)
        elif isinstance(node, (list, tuple)):
            for item in node:
                yield from cls.referenced_parameters(item)


class StatusRecordValidator:
    """Validator for the enumerated setup-status record."""

    def validate_record(self, key: str, initial_value: str, allowed_values: List[str]) -> bool:
        errors: List[str] = []
        warnings: List[str] = []

        if not STATUS_KEY.match(key or ""):
            errors.append(
                f"Key '{key}' must be a path like /<namespace>/<component>/setup-status"
            )
        if not allowed_values:
            errors.append("Allowed values cannot be empty")
        elif len(set(allowed_values)) != len(allowed_values):
            errors.append("Allowed values must be unique")
        elif initial_value not in allowed_values:
            errors.append(
                f"Initial value '{initial_value}' is not one of: {', '.join(allowed_values)}"
            )
        if any("|" in value for value in allowed_values or []):
            errors.append("Allowed values cannot contain '|'")

        return _report("Status record", key, errors, warnings)


class AccessGrantValidator:
    """
    Validator for IAM identity requests.

    Grants must be a non-empty subset of a fixed catalogue, and only an
    allow-listed service principal may assume the role.
    """

    def __init__(self, known_grants: Mapping[str, str], allowed_principals: Iterable[str]):
        self.known_grants = dict(known_grants)
        self.allowed_principals = tuple(allowed_principals)

    def validate_identity(self, name: str, trusted_principal: str, grants: List[str]) -> bool:
        errors: List[str] = []
        warnings: List[str] = []

        if trusted_principal not in self.allowed_principals:
            errors.append(
                f"Trusted principal '{trusted_principal}' is not allowed. "
                f"Use one of: {', '.join(self.allowed_principals)}"
            )
        if not grants:
            errors.append("At least one grant is required")
        unknown = sorted({g for g in grants or [] if g not in self.known_grants})
        if unknown:
            errors.append(
                f"Unknown grant(s): {', '.join(unknown)}. "
                f"Known grants are: {', '.join(sorted(self.known_grants))}"
            )
        if grants and len(set(grants)) != len(grants):
            warnings.append("Duplicate grants are attached once")

        return _report("IAM identity", name, errors, warnings)

    def validate_binding(self, name: str, instance_id: str) -> bool:
        errors: List[str] = []
        if not INSTANCE_ID.match(instance_id or ""):
            errors.append(f"'{instance_id}' is not an EC2 instance ID (i-xxxxxxxx)")
        return _report("Instance binding", name, errors, [])
