"""
Nutri Dashboard Security Test Suite
===================================

Covers the shared security utilities:
- Input sanitization and HTML escaping
- Email and RUT validation, RUT formatting
- Patient payload validation
- Login rate limiting
- CSRF tokens
- Audit logging

Created: 2026-10-18
Author: jetgause
"""

import json
import logging
import os
import re
import sys
from types import SimpleNamespace

import pytest
from fastapi import HTTPException

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from nutri_core.csrf_protection import (
    CSRF_HEADER_NAME,
    CSRFTokenStore,
    generate_csrf_token,
    require_csrf_token,
)
from nutri_core.security import (
    ClientRateLimiter,
    clean_rut,
    compute_rut_verifier,
    escape_html,
    format_rut,
    sanitize_input,
    sanitize_string,
    validate_cliente_data,
    validate_email,
    validate_rut,
)


# ============================================================================
# SANITIZATION TESTS
# ============================================================================

class TestSanitization:
    """Test markup and script removal."""

    def test_removes_angle_brackets(self):
        assert sanitize_input("<script>alert(1)</script>") == "scriptalert(1)/script"

    def test_removes_javascript_protocol_case_insensitive(self):
        assert sanitize_input("JaVaScRiPt:alert(1)") == "alert(1)"

    def test_removes_event_handlers(self):
        assert sanitize_input('img onerror=alert(1)') == "img alert(1)"
        assert sanitize_input('div ONCLICK=go()') == "div go()"

    def test_trims_whitespace(self):
        assert sanitize_input("  María José  ") == "María José"

    def test_plain_text_unchanged(self):
        assert sanitize_input("Plan hipocalórico 1800 kcal") == "Plan hipocalórico 1800 kcal"

    def test_empty_string(self):
        assert sanitize_input("") == ""
        assert sanitize_string("") == ""

    def test_nested_payload_does_not_survive(self):
        """Removing one pattern must not leave a new one behind."""
        result = sanitize_input("jajavascript:vascript:alert(1)")
        assert "javascript:" not in result.lower()

        result = sanitize_input("oonnclick=click=x")
        assert not re.search(r"on\w+=", result, re.IGNORECASE)

    def test_idempotent(self):
        samples = [
            "<b>hola</b>",
            "jajavascript:vascript:x",
            "  onload=init()  ",
            "normal text",
            "oonmouseover=nmouseover=y",
        ]
        for sample in samples:
            once = sanitize_input(sample)
            assert sanitize_input(once) == once

    def test_output_has_no_dangerous_patterns(self):
        payload = "<a href='javascript:void(0)' onclick=steal()>x</a>"
        result = sanitize_input(payload)

        assert "<" not in result and ">" not in result
        assert "javascript:" not in result.lower()
        assert not re.search(r"on\w+=", result, re.IGNORECASE)

    def test_recurses_into_lists(self):
        result = sanitize_input(["<b>a</b>", "  b ", 3])
        assert result == ["ba/b", "b", 3]

    def test_recurses_into_dicts(self):
        data = {
            "nombre": " <Ana> ",
            "peso": 62.5,
            "activo": True,
            "notas": None,
            "alergias": ["maní<", "onload=gluten"],
            "contacto": {"correo": "javascript:ana@mail.cl"},
        }
        result = sanitize_input(data)

        assert result == {
            "nombre": "Ana",
            "peso": 62.5,
            "activo": True,
            "notas": None,
            "alergias": ["maní", "gluten"],
            "contacto": {"correo": "ana@mail.cl"},
        }

    def test_non_string_scalars_pass_through(self):
        assert sanitize_input(42) == 42
        assert sanitize_input(None) is None
        assert sanitize_input(False) is False


class TestEscapeHtml:
    """Test HTML escaping."""

    def test_escapes_special_characters(self):
        assert escape_html('<a href="x">Tom & \'Jerry\'</a>') == \
            "&lt;a href=&quot;x&quot;&gt;Tom &amp; &#x27;Jerry&#x27;&lt;/a&gt;"

    def test_plain_text_unchanged(self):
        assert escape_html("Consulta de control") == "Consulta de control"

    def test_none_is_empty(self):
        assert escape_html(None) == ""


# ============================================================================
# FIELD VALIDATION TESTS
# ============================================================================

class TestEmailValidation:
    """Test email validation."""

    def test_valid_emails(self):
        assert validate_email("camila@nutri.cl")
        assert validate_email("a.b+c@sub.dominio.com")

    def test_invalid_emails(self):
        for email in ["", "sin-arroba.cl", "a@b", "a b@c.cl", "@dominio.cl", "a@@b.cl"]:
            assert not validate_email(email), email

    def test_max_length(self):
        local = "a" * 90
        assert validate_email(local + "@nutri.cl")          # 99 chars
        assert validate_email(local + "x@nutri.cl")         # 100 chars
        assert not validate_email(local + "xy@nutri.cl")    # 101 chars

    def test_reference_examples(self):
        assert validate_email("a@b.com")
        assert not validate_email("not-an-email")
        assert not validate_email("a@b.com" + "x" * 200)

    def test_non_string(self):
        assert not validate_email(None)
        assert not validate_email(12345)


class TestRutValidation:
    """Test Chilean RUT validation and formatting."""

    def test_verifier_computation(self):
        assert compute_rut_verifier("12345678") == "5"
        assert compute_rut_verifier("7654321") == "6"
        assert compute_rut_verifier("10000004") == "0"
        assert compute_rut_verifier("10000030") == "k"

    def test_valid_ruts(self):
        assert validate_rut("12.345.678-5")
        assert validate_rut("12345678-5")
        assert validate_rut("7654321-6")
        assert validate_rut("7.654.321-6")
        assert validate_rut("10000004-0")

    def test_k_verifier_any_case(self):
        assert validate_rut("10.000.030-K")
        assert validate_rut("10000030-k")

    def test_wrong_verifier_rejected(self):
        assert not validate_rut("12.345.678-9")
        assert not validate_rut("12345678-K")

    def test_bad_format_rejected(self):
        for rut in ["", "123456785", "12.345.678", "12-345-678-5", "abc", "123.456.789-5"]:
            assert not validate_rut(rut), rut

    def test_non_string(self):
        assert not validate_rut(None)

    def test_clean_rut(self):
        assert clean_rut("12.345.678-5") == "123456785"
        assert clean_rut(" 12 345 678-5 ") == "123456785"

    def test_format_rut(self):
        assert format_rut("123456785") == "12.345.678-5"
        assert format_rut("12345678-5") == "12.345.678-5"
        assert format_rut("12.345.678-5") == "12.345.678-5"
        assert format_rut("76543216") == "7.654.321-6"

    def test_format_rut_short_value(self):
        assert format_rut("1234-5") == "12345"
        assert format_rut("") == ""

    def test_format_rut_idempotent(self):
        formatted = format_rut("123456785")
        assert format_rut(formatted) == formatted


class TestClienteValidation:
    """Test aggregate patient payload validation."""

    def valid_data(self, **overrides):
        data = {
            "nombre": "Ana",
            "apellido": "Pérez",
            "rut": "12.345.678-5",
            "correo": "ana@mail.cl",
            "telefono": "+56 9 1234 5678",
        }
        data.update(overrides)
        return data

    def test_valid_payload(self):
        result = validate_cliente_data(self.valid_data())
        assert result.is_valid
        assert result.errors == []

    def test_optional_fields_may_be_missing(self):
        data = self.valid_data()
        del data["correo"]
        data["telefono"] = ""
        assert validate_cliente_data(data).is_valid

    def test_collects_all_errors_in_order(self):
        result = validate_cliente_data({
            "nombre": "A",
            "apellido": " ",
            "rut": "11.111.111-2",
            "correo": "no-es-email",
            "telefono": "12",
        })

        assert not result.is_valid
        assert result.errors == [
            "El nombre debe tener al menos 2 caracteres",
            "El apellido debe tener al menos 2 caracteres",
            "El RUT no es válido",
            "El email no es válido",
            "El teléfono no es válido",
        ]

    def test_short_names_and_bad_rut_reported_together(self):
        result = validate_cliente_data({"nombre": "A", "apellido": "B", "rut": "bad"})

        assert not result.is_valid
        assert len(result.errors) == 3

    def test_missing_rut(self):
        data = self.valid_data()
        del data["rut"]
        assert validate_cliente_data(data).errors == ["El RUT no es válido"]

    def test_to_dict(self):
        result = validate_cliente_data(self.valid_data(nombre="X"))
        assert result.to_dict() == {
            "isValid": False,
            "errors": ["El nombre debe tener al menos 2 caracteres"],
        }


# ============================================================================
# RATE LIMITING TESTS
# ============================================================================

class TestRateLimiting:
    """Test rate limiting functionality."""

    def test_rate_limiter_tracks_requests(self, clock):
        """Verify request tracking."""
        limiter = ClientRateLimiter(max_attempts=5, window_ms=60000, clock=clock)
        client_id = "email_ana@mail.cl"

        for i in range(5):
            assert limiter.is_allowed(client_id), f"Request {i+1} should be allowed"

        assert not limiter.is_allowed(client_id), "Request should be rate limited"
        assert limiter.get_remaining_attempts(client_id) == 0

    def test_rejected_attempts_are_not_recorded(self, clock):
        limiter = ClientRateLimiter(max_attempts=2, window_ms=1000, clock=clock)

        assert limiter.is_allowed("c")
        assert limiter.is_allowed("c")
        for _ in range(5):
            assert not limiter.is_allowed("c")

        assert len(limiter.attempts["c"]) == 2

    def test_rate_limiter_resets_window(self, clock):
        """Verify time window expiry."""
        limiter = ClientRateLimiter(max_attempts=2, window_ms=1000, clock=clock)
        client_id = "client"

        assert limiter.is_allowed(client_id)
        clock.advance(500)
        assert limiter.is_allowed(client_id)
        assert not limiter.is_allowed(client_id)

        # the first attempt is now exactly window_ms old
        clock.advance(500)
        assert limiter.get_remaining_attempts(client_id) == 1
        assert limiter.is_allowed(client_id)
        assert not limiter.is_allowed(client_id)

    def test_login_window_scenario(self, clock):
        limiter = ClientRateLimiter(max_attempts=5, window_ms=900000, clock=clock)

        for _ in range(5):
            assert limiter.is_allowed("u1")
        assert not limiter.is_allowed("u1")
        assert limiter.get_remaining_attempts("u1") == 0

        clock.advance(900000 + 1)
        assert limiter.is_allowed("u1")

        limiter.reset("u1")
        assert limiter.get_remaining_attempts("u1") == 5

    def test_remaining_attempts_does_not_record(self, clock):
        limiter = ClientRateLimiter(max_attempts=3, window_ms=1000, clock=clock)

        assert limiter.get_remaining_attempts("x") == 3
        assert limiter.get_remaining_attempts("x") == 3
        limiter.is_allowed("x")
        assert limiter.get_remaining_attempts("x") == 2

    def test_identifiers_are_independent(self, clock):
        limiter = ClientRateLimiter(max_attempts=1, window_ms=1000, clock=clock)

        assert limiter.is_allowed("a")
        assert not limiter.is_allowed("a")
        assert limiter.is_allowed("b")

    def test_reset(self, clock):
        limiter = ClientRateLimiter(max_attempts=1, window_ms=1000, clock=clock)
        limiter.is_allowed("a")
        limiter.reset("a")

        assert "a" not in limiter.attempts
        assert limiter.is_allowed("a")

    def test_default_limits(self):
        limiter = ClientRateLimiter()
        assert limiter.max_attempts == 5
        assert limiter.window_ms == 15 * 60 * 1000


# ============================================================================
# CSRF TESTS
# ============================================================================

class TestCSRFProtection:
    """Test CSRF protection."""

    def test_csrf_token_generation(self):
        """Test CSRF token creation."""
        token1 = generate_csrf_token()
        token2 = generate_csrf_token()

        assert token1 != token2
        assert re.fullmatch(r"[0-9a-f]{64}", token1)

    def test_csrf_token_validation(self):
        """Test token validation."""
        session_id = "test_session_123"
        token = generate_csrf_token()

        store = CSRFTokenStore()
        store.store(session_id, token)

        assert store.validate(session_id, token)
        assert not store.validate(session_id, "wrong_token")
        assert not store.validate("unknown_session", token)

    def test_store_issue_and_remove(self):
        store = CSRFTokenStore()
        token = store.issue("s1")

        assert store.get("s1") == token
        assert store.validate("s1", token)
        assert not store.validate("s1", None)

        store.remove("s1")
        assert len(store) == 0
        assert not store.validate("s1", token)

    def test_reissue_replaces_token(self):
        store = CSRFTokenStore()
        first = store.issue("s1")
        second = store.issue("s1")

        assert not store.validate("s1", first)
        assert store.validate("s1", second)

    def _request(self, method, headers=None):
        return SimpleNamespace(method=method, headers=headers or {},
                               url=SimpleNamespace(path="/api/clientes"))

    def test_require_csrf_skips_safe_methods(self):
        store = CSRFTokenStore()
        require_csrf_token(self._request("GET"), "s1", store)

    def test_require_csrf_rejects_missing_header(self):
        store = CSRFTokenStore()
        store.issue("s1")

        with pytest.raises(HTTPException) as exc_info:
            require_csrf_token(self._request("POST"), "s1", store)
        assert exc_info.value.status_code == 403

    def test_require_csrf_accepts_matching_header(self):
        store = CSRFTokenStore()
        token = store.issue("s1")
        require_csrf_token(self._request("DELETE", {CSRF_HEADER_NAME: token}), "s1", store)


# ============================================================================
# AUDIT LOGGING TESTS
# ============================================================================

class TestAuditLogging:
    """Security events are logged as JSON."""

    def test_rate_limit_violation_logged(self, clock, caplog):
        limiter = ClientRateLimiter(max_attempts=1, window_ms=1000, clock=clock)
        limiter.is_allowed("email_x@y.cl")

        with caplog.at_level(logging.ERROR, logger="nutri_security_audit"):
            limiter.is_allowed("email_x@y.cl")

        records = [r for r in caplog.records if r.name == "nutri_security_audit"]
        assert records
        payload = json.loads(records[-1].getMessage())
        assert payload["event_type"] == "SECURITY_VIOLATION"
        assert payload["details"]["violation_type"] == "RATE_LIMIT_EXCEEDED"
        assert payload["details"]["identifier"] == "email_x@y.cl"
