"""Tests for auth_header decoding and delivery header assembly."""

from hookrelay.dispatch.headers import build_delivery_headers, decode_auth_header


class TestDecodeAuthHeader:
    def test_mixed_entries(self):
        headers = decode_auth_header("Authorization Bearer,Malformed,X-Foo bar")
        assert headers == {"Authorization": "Bearer", "X-Foo": "bar"}

    def test_multi_word_value_is_kept_whole(self):
        headers = decode_auth_header("Authorization Bearer tok")
        assert headers == {"Authorization": "Bearer tok"}

    def test_empty_input(self):
        assert decode_auth_header("") == {}
        assert decode_auth_header(None) == {}

    def test_whitespace_around_segments(self):
        headers = decode_auth_header(" X-One  1 ,  X-Two 2  ,")
        assert headers == {"X-One": "1", "X-Two": "2"}

    def test_segments_missing_a_part_are_dropped(self):
        assert decode_auth_header(",, ,OnlyKey,  ") == {}

    def test_last_duplicate_wins(self):
        assert decode_auth_header("X-A 1,X-A 2") == {"X-A": "2"}


class TestBuildDeliveryHeaders:
    def test_content_type_added(self):
        headers = build_delivery_headers("X-Foo bar")
        assert headers == {"Content-Type": "application/json", "X-Foo": "bar"}

    def test_no_auth_header(self):
        assert build_delivery_headers("") == {"Content-Type": "application/json"}

    def test_caller_content_type_overrides(self):
        headers = build_delivery_headers("content-type application/vnd.api+json")
        assert headers == {"content-type": "application/vnd.api+json"}
