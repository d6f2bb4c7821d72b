import pytest

from validator import AccessGrantValidator, SsmDocumentValidator, StatusRecordValidator


def _document(steps, parameters=None):
    return {
        "schemaVersion": "2.2",
        "description": "Validator test document",
        "parameters": parameters or {},
        "mainSteps": steps,
    }


def _step(name, *lines):
    return {
        "name": name,
        "action": "aws:runShellScript",
        "onFailure": "Abort",
        "inputs": {"timeoutSeconds": 60, "runCommand": ["#!/bin/bash", "set -e", *lines]},
    }


class TestSsmDocumentValidator:
    def test_accepts_declared_placeholders(self):
        payload = _document(
            [_step("write", "echo {{ upstreamPort }}")],
            {"upstreamPort": {"type": "String", "default": "8080", "description": "Port"}},
        )

        assert SsmDocumentValidator().validate_document(payload, "ok")

    def test_rejects_undeclared_placeholder(self):
        payload = _document([_step("write", "echo {{upstreamPort}}")])

        with pytest.raises(ValueError, match=r"Placeholder '\{\{ upstreamPort \}\}'"):
            SsmDocumentValidator().validate_document(payload, "broken")

    def test_parameter_store_references_are_external(self):
        payload = _document([_step("write", "echo {{ssm:/openclaw/token}}")])

        assert SsmDocumentValidator().validate_document(payload, "ok")

    def test_rejects_empty_steps(self):
        with pytest.raises(ValueError, match="'mainSteps' array cannot be empty"):
            SsmDocumentValidator().validate_document(_document([]), "empty")

    def test_rejects_duplicate_step_names(self):
        payload = _document([_step("same", "true"), _step("same", "true")])

        with pytest.raises(ValueError, match="Duplicate step name"):
            SsmDocumentValidator().validate_document(payload, "dupes")

    def test_rejects_wrong_schema_and_empty_command(self):
        payload = _document([_step("empty")])
        payload["schemaVersion"] = "1.2"
        payload["mainSteps"][0]["inputs"]["runCommand"] = []

        with pytest.raises(ValueError) as excinfo:
            SsmDocumentValidator().validate_document(payload, "bad")

        message = str(excinfo.value)
        assert "Unsupported schemaVersion '1.2'" in message
        assert "non-empty 'runCommand'" in message

    def test_rejects_bad_parameter_type_and_default(self):
        payload = _document(
            [_step("run", "true")],
            {"count": {"type": "Integer", "default": "three"}, "flag": {"type": "Bool"}},
        )

        with pytest.raises(ValueError) as excinfo:
            SsmDocumentValidator().validate_document(payload, "params")

        assert "default value doesn't match type Integer" in str(excinfo.value)
        assert "invalid type 'Bool'" in str(excinfo.value)

    def test_referenced_parameters_walks_nested_structures(self):
        node = {"a": ["{{ one }}", {"b": "x {{two}} y {{ one }}"}], "c": 3}

        assert sorted(SsmDocumentValidator.referenced_parameters(node)) == ["one", "one", "two"]


class TestStatusRecordValidator:
    values = ["pending", "in-progress", "complete", "failed"]

    def test_accepts_default_record(self):
        assert StatusRecordValidator().validate_record(
            "/openclaw/nginx/setup-status", "pending", self.values
        )

    @pytest.mark.parametrize(
        "key, initial, allowed, message",
        [
            ("setup-status", "pending", values, "must be a path"),
            ("/openclaw/setup-status", "pending", values, "must be a path"),
            ("/openclaw/nginx/setup-status", "done", values, "Initial value 'done'"),
            ("/openclaw/nginx/setup-status", "pending", [], "cannot be empty"),
            ("/openclaw/nginx/setup-status", "a", ["a", "a"], "must be unique"),
            ("/openclaw/nginx/setup-status", "a|b", ["a|b"], "cannot contain '|'"),
        ],
    )
    def test_rejects(self, key, initial, allowed, message):
        with pytest.raises(ValueError, match=message):
            StatusRecordValidator().validate_record(key, initial, allowed)


class TestAccessGrantValidator:
    validator = AccessGrantValidator(
        {"AmazonSSMManagedInstanceCore": "arn:aws:iam::aws:policy/AmazonSSMManagedInstanceCore"},
        ["ec2.amazonaws.com"],
    )

    def test_accepts_known_grant(self):
        assert self.validator.validate_identity(
            "role", "ec2.amazonaws.com", ["AmazonSSMManagedInstanceCore"]
        )

    def test_rejects_empty_grants(self):
        with pytest.raises(ValueError, match="At least one grant is required"):
            self.validator.validate_identity("role", "ec2.amazonaws.com", [])

    def test_rejects_unknown_principal(self):
        with pytest.raises(ValueError, match="Trusted principal 'lambda.amazonaws.com'"):
            self.validator.validate_identity(
                "role", "lambda.amazonaws.com", ["AmazonSSMManagedInstanceCore"]
            )

    def test_rejects_unknown_grant(self):
        with pytest.raises(ValueError, match="Unknown grant"):
            self.validator.validate_identity("role", "ec2.amazonaws.com", ["AdministratorAccess"])

    @pytest.mark.parametrize("instance_id", ["i-0123abcd", "i-0123456789abcdef0"])
    def test_accepts_instance_ids(self, instance_id):
        assert self.validator.validate_binding("profile", instance_id)

    @pytest.mark.parametrize("instance_id", ["", "i-XYZ", "0123456789abcdef0", "i-0123"])
    def test_rejects_instance_ids(self, instance_id):
        with pytest.raises(ValueError, match="not an EC2 instance ID"):
            self.validator.validate_binding("profile", instance_id)
