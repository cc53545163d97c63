"""
Input scanner unit tests: pattern detection, schema carve-out and sanitization.
"""

import pytest

from backlify.middleware.input_validator import (
    detect_sql,
    detect_xss,
    looks_like_schema,
    sanitize,
    scan,
    scan_email,
)

# A realistic HS256 token; base64url text may contain '-' runs
JWT_LIKE = (
    "eyJhbGciOiJIUzI1NiIsInR5cCI6IkpXVCJ9.eyJ1c2VybmFtZSI6ImFsaWNlIn0."
    "x--Q8n0b1_zZ4Hc-kP--rW9Jw"
)


@pytest.mark.unit
@pytest.mark.security
class TestDetection:

    @pytest.mark.parametrize("value", [
        "admin' OR 1=1; DROP TABLE users",
        "1 UNION SELECT password FROM users",
        "x'; DELETE FROM orders",
        "name' --",
        "1; WAITFOR DELAY '0:0:5'",
        "/* comment */ 1",
        "sleep(5)",
    ])
    def test_sql_injection_detected(self, value):
        assert detect_sql(value)

    @pytest.mark.parametrize("value", [
        "alice",
        "alice@example.com",
        "Please select your plan",
        "drop me a line",
        JWT_LIKE,
        "a-b--c",
    ])
    def test_benign_strings_pass(self, value):
        assert not detect_sql(value)
        assert not detect_xss(value)

    @pytest.mark.parametrize("value", [
        "<script>alert(1)</script>",
        "javascript:void(0)",
        '<img src=x onerror=steal()>',
        "document.cookie",
    ])
    def test_xss_detected(self, value):
        assert detect_xss(value)


@pytest.mark.unit
@pytest.mark.security
class TestScan:

    def test_nested_paths_reported(self):
        report = scan({"user": {"tags": ["ok", "<script>x</script>"]}})
        assert report.has_xss
        assert not report.has_sql
        assert "user.tags.1" in report.fields

    def test_sql_check_can_be_disabled(self):
        report = scan({"query": "SELECT * FROM users"}, check_sql=False)
        assert not report.hit

    def test_schema_objects_are_skipped(self):
        body = {
            "schema": {
                "tables": [{"name": "users", "columns": [{"name": "note", "type": "TEXT"}]}],
            },
            "title": "<script>x</script>",
        }
        report = scan(body, check_sql=False, skip_schema=True)
        assert list(report.fields) == ["title"]

    @pytest.mark.parametrize("value,expected", [
        ({"tables": []}, True),
        ({"name": "users", "columns": []}, True),
        ({"name": "id", "type": "UUID", "constraints": "PRIMARY KEY"}, True),
        ({"targetTable": "users", "type": "one-to-many", "sourceColumn": "user_id"}, True),
        ({"name": "users"}, False),
        ("tables", False),
    ])
    def test_schema_shapes(self, value, expected):
        assert looks_like_schema(value) is expected

    def test_email_patterns(self):
        hits = scan_email({"html": "<p onclick='steal()'>hi</p>", "subject": "Hello"})
        assert list(hits) == ["html"]
        assert scan_email({"html": "<p>Meet at 10:00</p>"}) == {}


@pytest.mark.unit
@pytest.mark.security
class TestSanitize:

    def test_strings_are_escaped(self):
        assert sanitize({"title": "Tom & Jerry <b>"}) == {"title": "Tom &amp; Jerry &lt;b&gt;"}

    def test_password_is_untouched(self):
        assert sanitize({"password": "P&ss<word>1"}) == {"password": "P&ss<word>1"}

    def test_non_strings_survive(self):
        body = {"count": 3, "active": True, "items": ["<i>", None]}
        assert sanitize(body) == {"count": 3, "active": True, "items": ["&lt;i&gt;", None]}

    def test_base64_is_preserved(self):
        signature = "q83vEjRWeJA+/w=="
        assert sanitize(signature) == signature
