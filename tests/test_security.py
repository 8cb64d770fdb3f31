from __future__ import annotations

from cvtailor.security import is_uuid, redact_sensitive, sanitize_filename


def test_redact_sensitive_headers_and_tokens():
    redacted = redact_sensitive(
        {
            "Authorization": "Bearer abc",
            "content-type": "text/plain",
            "nested": [{"api_key": "k"}, "sk-or-v1-0123456789abcdef0123"],
        }
    )
    assert redacted == {
        "Authorization": "***REDACTED***",
        "content-type": "text/plain",
        "nested": [{"api_key": "***REDACTED***"}, "***REDACTED***"],
    }


def test_sanitize_filename():
    assert sanitize_filename("../../etc/passwd") == "passwd"
    assert sanitize_filename("C:\\Users\\jane\\My CV (final).pdf") == "MyCVfinal.pdf"
    assert sanitize_filename(".hidden.txt") == "hidden.txt"
    assert sanitize_filename("", default="job_spec") == "job_spec"
    assert sanitize_filename("résumé.docx") == "rsum.docx"
    assert len(sanitize_filename("a" * 500 + ".pdf")) == 120


def test_is_uuid():
    assert is_uuid("7f1d3c36-5a55-4b8a-8f8c-1a9b3f0f3e11")
    assert not is_uuid("not-a-uuid")
    assert not is_uuid("")
