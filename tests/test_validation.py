"""Unit tests for core/validation.py -- declarative field validation.

Covers:
- All field errors are collected in one pass; undeclared fields are dropped
- Required vs optional fields (optional absent -> None)
- Bounded text: max length, allowed characters, HTML escaping
- Numeric / integer: inclusive bounds, non-numeric and non-finite input
- Email normalization and rejection
- Dates: canonical YYYY-MM-DD only
- Password complexity rules, common passwords, and complexity=False
- URL scheme allow-list; filename path stripping and extension allow-list
- Injection screening for markup and SQL signatures
- Error messages never echo the submitted value
"""

from __future__ import annotations

import pytest

from core.errors import ErrorCode, ValidationFailed
from core.validation import (
    DateRule,
    EmailRule,
    FilenameRule,
    IntegerRule,
    NumericRule,
    PasswordRule,
    TextRule,
    UrlRule,
    validate,
)


class TestEngine:
    def test_collects_every_error(self) -> None:
        schema = {"email": EmailRule(), "name": TextRule(max_length=5), "age": IntegerRule(min=0)}
        result = validate({"email": "nope", "name": "far too long", "age": -1}, schema)
        assert not result.ok
        assert set(result.errors) == {"email", "name", "age"}

    def test_undeclared_fields_dropped(self) -> None:
        result = validate({"name": "Ada", "is_admin": True}, {"name": TextRule()})
        assert result.ok
        assert result.values == {"name": "Ada"}

    def test_required_field_missing(self) -> None:
        result = validate({}, {"name": TextRule()})
        assert result.errors == {"name": "Name is required."}

    @pytest.mark.parametrize("blank", [None, "", "   "])
    def test_blank_counts_as_missing(self, blank) -> None:
        assert "name" in validate({"name": blank}, {"name": TextRule()}).errors

    def test_optional_field_absent(self) -> None:
        result = validate({}, {"nickname": TextRule(required=False)})
        assert result.ok
        assert result.values == {"nickname": None}

    def test_none_payload(self) -> None:
        assert validate(None, {"name": TextRule(required=False)}).ok

    def test_raise_for_errors(self) -> None:
        result = validate({}, {"name": TextRule()})
        with pytest.raises(ValidationFailed) as exc_info:
            result.raise_for_errors()
        assert exc_info.value.code is ErrorCode.VALIDATION_ERROR
        assert exc_info.value.data == {"validation_errors": {"name": "Name is required."}}

    def test_raise_for_errors_noop_when_ok(self) -> None:
        validate({"name": "Ada"}, {"name": TextRule()}).raise_for_errors()

    def test_messages_do_not_echo_input(self) -> None:
        secret = "hunter2-supersecret"
        result = validate({"amount": secret, "email": secret}, {"amount": NumericRule(), "email": EmailRule()})
        assert all(secret not in message for message in result.errors.values())


class TestText:
    def test_max_length_boundary(self) -> None:
        rule = {"name": TextRule(max_length=10)}
        assert validate({"name": "a" * 10}, rule).ok
        assert validate({"name": "a" * 11}, rule).errors["name"] == "Name exceeds maximum length of 10 characters."

    def test_allowed_chars(self) -> None:
        rule = {"code": TextRule(allowed_chars=r"[A-Z]{3}-\d{4}")}
        assert validate({"code": "ABC-1234"}, rule).values["code"] == "ABC-1234"
        assert "code" in validate({"code": "abc-1234"}, rule).errors

    def test_html_is_escaped(self) -> None:
        result = validate({"note": 'Tom & "Jerry"'}, {"note": TextRule()})
        assert result.values["note"] == "Tom &amp; &quot;Jerry&quot;"

    def test_escape_can_be_disabled(self) -> None:
        result = validate({"note": "Tom & Jerry"}, {"note": TextRule(escape_html=False)})
        assert result.values["note"] == "Tom & Jerry"

    def test_whitespace_is_trimmed(self) -> None:
        assert validate({"name": "  Ada  "}, {"name": TextRule()}).values["name"] == "Ada"

    def test_non_string_rejected(self) -> None:
        assert validate({"name": 42}, {"name": TextRule()}).errors["name"] == "Name must be a string."


class TestInjectionScreen:
    @pytest.mark.parametrize(
        "value",
        [
            "<script>alert(1)</script>",
            "javascript:alert(1)",
            '<img src=x onerror="alert(1)">',
            "<iframe src=//evil>",
            "x' OR 1=1",
            "name'; DROP TABLE users; --",
            "1 UNION SELECT password FROM users",
            "admin'--",
            "a /* comment */ b",
        ],
    )
    def test_rejected(self, value) -> None:
        result = validate({"comment": value}, {"comment": TextRule()})
        assert result.errors == {"comment": "Comment contains invalid characters."}

    @pytest.mark.parametrize("value", ["Quarterly ledger review", "O'Brien", "50% off, 2 for 1", "C:\\temp"])
    def test_ordinary_text_passes(self, value) -> None:
        assert validate({"comment": value}, {"comment": TextRule()}).ok

    def test_detection_is_logged(self, caplog) -> None:
        validate({"comment": "<script>alert(1)</script>"}, {"comment": TextRule()})
        assert "Injection signature" in caplog.text


class TestNumbers:
    def test_inclusive_bounds(self) -> None:
        rule = {"amount": NumericRule(min=0, max=100)}
        assert validate({"amount": 0}, rule).values["amount"] == 0.0
        assert validate({"amount": 100}, rule).values["amount"] == 100.0
        assert validate({"amount": -0.01}, rule).errors["amount"] == "Amount must be at least 0."
        assert validate({"amount": 100.5}, rule).errors["amount"] == "Amount must not exceed 100."

    def test_numeric_strings(self) -> None:
        assert validate({"amount": " 12.5 "}, {"amount": NumericRule()}).values["amount"] == 12.5

    @pytest.mark.parametrize("value", ["twelve", "nan", "inf", "1e400", 10**400, -(10**400), True, [1], {"a": 1}])
    def test_non_numeric(self, value) -> None:
        assert validate({"amount": value}, {"amount": NumericRule()}).errors["amount"] == "Amount must be numeric."

    @pytest.mark.parametrize("value", [10**400, "9" * 400])
    def test_huge_integer_is_a_field_error(self, value) -> None:
        result = validate({"count": value}, {"count": IntegerRule()})
        assert result.errors == {"count": "Count must be numeric."}

    def test_integer(self) -> None:
        rule = {"count": IntegerRule(min=1, max=10)}
        assert validate({"count": "7"}, rule).values["count"] == 7
        assert validate({"count": 10}, rule).values["count"] == 10
        assert validate({"count": 2.5}, rule).errors["count"] == "Count must be an integer."
        assert "count" in validate({"count": 11}, rule).errors

    def test_large_integer_keeps_precision(self) -> None:
        assert validate({"id": 2**53 + 1}, {"id": IntegerRule()}).values["id"] == 2**53 + 1


class TestEmail:
    def test_normalizes_domain(self) -> None:
        assert validate({"email": "Ada@Example.COM"}, {"email": EmailRule()}).values["email"] == "Ada@example.com"

    @pytest.mark.parametrize("value", ["plainaddress", "@example.com", "ada@", "ada@@example.com", "ada example@x.com"])
    def test_invalid(self, value) -> None:
        result = validate({"email": value}, {"email": EmailRule()})
        assert result.errors["email"] == "Email is not a valid email address."

    def test_too_long(self) -> None:
        value = "a" * 250 + "@example.com"
        assert validate({"email": value}, {"email": EmailRule()}).errors["email"] == "Email is too long."


class TestDate:
    def test_canonical_date(self) -> None:
        assert validate({"start": "2024-02-29"}, {"start": DateRule()}).values["start"] == "2024-02-29"

    @pytest.mark.parametrize("value", ["2023-02-29", "2024-1-5", "05/01/2024", "2024-13-01", "yesterday"])
    def test_invalid(self, value) -> None:
        result = validate({"start": value}, {"start": DateRule()})
        assert result.errors["start"] == "Start must be in YYYY-MM-DD format."


class TestPassword:
    @pytest.mark.parametrize(
        "value,message",
        [
            ("Sh0rt!", "Password must be at least 8 characters long."),
            ("alllower1!", "Password must contain at least one uppercase letter."),
            ("ALLUPPER1!", "Password must contain at least one lowercase letter."),
            ("NoDigits!!", "Password must contain at least one number."),
            ("NoSpecial12", "Password must contain at least one special character."),
            ("P" + "a1!" * 43, "Password must not exceed 128 characters."),
        ],
    )
    def test_rules(self, value, message) -> None:
        assert validate({"password": value}, {"password": PasswordRule()}).errors["password"] == message

    def test_common_password(self) -> None:
        result = validate({"password": "Password1!"}, {"password": PasswordRule()})
        assert result.errors["password"] == "Password is too common."

    def test_strong_password_not_escaped(self) -> None:
        result = validate({"password": "C0rrect<Horse>&"}, {"password": PasswordRule()})
        assert result.values["password"] == "C0rrect<Horse>&"

    def test_password_always_required(self) -> None:
        result = validate({}, {"password": PasswordRule(required=False)})
        assert result.errors["password"] == "Password is required."

    def test_complexity_off_checks_length_only(self) -> None:
        rule = {"password": PasswordRule(min_length=1, complexity=False)}
        assert validate({"password": "legacy"}, rule).ok
        assert "password" in validate({"password": "x" * 129}, rule).errors


class TestUrl:
    def test_https(self) -> None:
        value = "https://ledger.example.com/reports?id=7"
        assert validate({"site": value}, {"site": UrlRule()}).values["site"] == value

    @pytest.mark.parametrize("value", ["ftp://example.com/file", "javascript:alert(1)", "file:///etc/passwd"])
    def test_scheme_not_allowed(self, value) -> None:
        assert "site" in validate({"site": value}, {"site": UrlRule()}).errors

    @pytest.mark.parametrize("value", ["https://", "https:///path", "http://exa mple.com"])
    def test_malformed(self, value) -> None:
        assert "site" in validate({"site": value}, {"site": UrlRule()}).errors


class TestFilename:
    def test_strips_directories(self) -> None:
        rule = {"upload": FilenameRule()}
        assert validate({"upload": "../../etc/passwd"}, rule).values["upload"] == "passwd"
        assert validate({"upload": "C:\\Users\\ada\\report.csv"}, rule).values["upload"] == "report.csv"

    @pytest.mark.parametrize("value", ["..", "dir/", "bad name.csv", "semi;colon.txt", "null\x00.txt"])
    def test_rejected(self, value) -> None:
        assert "upload" in validate({"upload": value}, {"upload": FilenameRule()}).errors

    def test_extension_allow_list(self) -> None:
        rule = {"upload": FilenameRule(allowed_extensions=("csv", ".XLSX"))}
        assert validate({"upload": "ledger.CSV"}, rule).ok
        assert validate({"upload": "ledger.xlsx"}, rule).ok
        assert validate({"upload": "ledger.exe"}, rule).errors["upload"] == "Upload file type is not allowed."
        assert "upload" in validate({"upload": "README"}, rule).errors
