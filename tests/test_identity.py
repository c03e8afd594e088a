"""Tests for identity token derivation."""
from __future__ import annotations

import hashlib
import json

import pytest

from resource_initializer.identity import (
    build_payload,
    function_hash,
    identity_token,
    physical_resource_id,
)


class TestBuildPayload:
    """Tests for the invocation payload."""

    def test_payload_shape(self):
        """Payload wraps config under params.config."""
        payload = build_payload({"credsSecretName": "x"})
        assert json.loads(payload) == {"params": {"config": {"credsSecretName": "x"}}}

    def test_payload_is_compact(self):
        assert build_payload({"credsSecretName": "x"}) == '{"params":{"config":{"credsSecretName":"x"}}}'

    def test_none_config_becomes_empty_mapping(self):
        assert json.loads(build_payload(None)) == {"params": {"config": {}}}

    def test_non_serializable_config_raises(self):
        with pytest.raises(TypeError):
            build_payload({"when": object()})


class TestFunctionHash:
    """Tests for the function hash."""

    def test_code_hash_is_part_of_hash(self):
        h1 = function_hash("image-a", function_name="f", memory_size=128, timeout=120)
        h2 = function_hash("image-b", function_name="f", memory_size=128, timeout=120)
        assert h1 != h2

    def test_function_settings_are_part_of_hash(self):
        h1 = function_hash("fp", function_name="f", memory_size=128, timeout=120)
        h2 = function_hash("fp", function_name="f", memory_size=256, timeout=120)
        assert h1 != h2

    def test_nested_settings_are_part_of_hash(self):
        h1 = function_hash("fp", subnets={"subnet_type": "PRIVATE_WITH_EGRESS"}, security_groups=[])
        h2 = function_hash("fp", subnets={"subnet_type": "PRIVATE_ISOLATED"}, security_groups=[])
        h3 = function_hash("fp", subnets={"subnet_type": "PRIVATE_WITH_EGRESS"}, security_groups=["sg-1"])
        assert len({h1, h2, h3}) == 3

    def test_function_hash_ignores_keyword_order(self):
        h1 = function_hash("fp", function_name="f", memory_size=128, timeout=120)
        h2 = function_hash("fp", timeout=120, memory_size=128, function_name="f")
        assert h1 == h2


class TestIdentityToken:
    """Tests for the identity token."""

    def test_token_is_md5_of_hash_and_payload(self):
        payload = build_payload({"credsSecretName": "x"})
        expected = hashlib.md5(("abc" + payload).encode("utf-8")).hexdigest()
        assert identity_token("abc", payload) == expected

    def test_token_is_deterministic(self):
        payload = build_payload({"credsSecretName": "x"})
        assert identity_token("abc", payload) == identity_token("abc", payload)

    def test_payload_change_changes_token(self):
        assert identity_token("abc", build_payload({"credsSecretName": "x"})) != identity_token(
            "abc", build_payload({"credsSecretName": "y"})
        )

    def test_function_change_changes_token(self):
        payload = build_payload({"credsSecretName": "x"})
        assert identity_token("abc", payload) != identity_token("abd", payload)

    def test_physical_resource_id_format(self):
        assert physical_resource_id("MyRdsInit", "deadbeef") == "MyRdsInit-AwsSdkCall-deadbeef"
