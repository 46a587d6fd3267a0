"""Tests for request fingerprinting.

Business behaviour: identical requests always produce the same fingerprint,
and any change to the serialised request produces a different one.
"""

import base64
import hashlib

from completion_cache.fingerprint import canonical_json, fingerprint

from .conftest import make_request


class TestCanonicalJson:
    """Tests for canonical_json()."""

    def test_uses_compact_separators(self) -> None:
        assert canonical_json({"a": 1, "b": [1, 2]}) == '{"a":1,"b":[1,2]}'

    def test_keeps_non_ascii_characters(self) -> None:
        assert canonical_json({"t": "café"}) == '{"t":"café"}'

    def test_preserves_insertion_order(self) -> None:
        assert canonical_json({"b": 1, "a": 2}) == '{"b":1,"a":2}'


class TestFingerprint:
    """Tests for fingerprint()."""

    def test_is_deterministic(self) -> None:
        assert fingerprint(make_request()) == fingerprint(make_request())

    def test_is_base64_sha256_of_compact_json(self) -> None:
        expected = base64.b64encode(hashlib.sha256(b'{"a":1}').digest()).decode()

        assert fingerprint({"a": 1}) == expected

    def test_has_fixed_length(self) -> None:
        digest = fingerprint(make_request())

        assert len(digest) == 44
        assert len(base64.b64decode(digest)) == 32

    def test_differs_when_temperature_changes(self) -> None:
        assert fingerprint(make_request(temperature=0.0)) != fingerprint(
            make_request(temperature=0.7)
        )

    def test_differs_when_message_changes(self) -> None:
        assert fingerprint(make_request("A")) != fingerprint(make_request("B"))

    def test_key_order_is_significant(self) -> None:
        assert fingerprint({"a": 1, "b": 2}) != fingerprint({"b": 2, "a": 1})
