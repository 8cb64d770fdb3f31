from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


def split_loose_list(value: Any) -> list[str]:
    """Coerce a comma-separated string, a scalar, or a list into trimmed non-empty strings."""
    if value is None:
        return []
    if isinstance(value, str):
        items: list[Any] = value.split(",")
    elif isinstance(value, (list, tuple)):
        items = list(value)
    else:
        items = [value]
    out: list[str] = []
    for item in items:
        if item is None:
            continue
        text = str(item).strip()
        if text:
            out.append(text)
    return out


def _scalar_text(value: Any) -> Any:
    if value is None:
        return ""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return value


def _as_line_list(value: Any) -> list[str]:
    # Achievements and details may legitimately contain commas.
    if isinstance(value, str):
        return [value.strip()] if value.strip() else []
    return split_loose_list(value)


class _CvModel(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)


class ExperienceEntry(_CvModel):
    job_title: str = ""
    company_name: str = ""
    start_date: str = ""
    end_date: str = ""
    location: str = ""
    achievements: list[str] = Field(default_factory=list)

    @field_validator("job_title", "company_name", "start_date", "end_date", "location", mode="before")
    @classmethod
    def _text_fields(cls, value: Any) -> Any:
        return _scalar_text(value)

    @field_validator("achievements", mode="before")
    @classmethod
    def _normalize_achievements(cls, value: Any) -> list[str]:
        return _as_line_list(value)


class EducationEntry(_CvModel):
    degree_name: str = ""
    university_name: str = ""
    location: str = ""
    start_date: str = ""
    end_date: str = ""
    details: list[str] = Field(default_factory=list)

    @field_validator("degree_name", "university_name", "location", "start_date", "end_date", mode="before")
    @classmethod
    def _text_fields(cls, value: Any) -> Any:
        return _scalar_text(value)

    @field_validator("details", mode="before")
    @classmethod
    def _normalize_details(cls, value: Any) -> list[str]:
        return _as_line_list(value)


class TailoredCv(_CvModel):
    full_name: str = Field(min_length=1)
    email: str = ""
    phone_number: str = ""
    linkedin_url: str = ""
    portfolio_github_url: str = ""
    address: str = ""
    summary: str = ""
    experience: list[ExperienceEntry] = Field(default_factory=list)
    education: list[EducationEntry] = Field(default_factory=list)
    technical_skills: list[str] = Field(default_factory=list)
    soft_skills: list[str] = Field(default_factory=list)

    @field_validator(
        "email",
        "phone_number",
        "linkedin_url",
        "portfolio_github_url",
        "address",
        "summary",
        mode="before",
    )
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return _scalar_text(value)

    @field_validator("technical_skills", "soft_skills", mode="before")
    @classmethod
    def _normalize_skills(cls, value: Any) -> list[str]:
        return split_loose_list(value)

    @field_validator("experience", "education", mode="before")
    @classmethod
    def _none_to_list(cls, value: Any) -> Any:
        return [] if value is None else value


class TailorCvRequest(BaseModel):
    submission_id: str = Field(alias="submissionId", min_length=1)

    model_config = ConfigDict(populate_by_name=True)


class QueueControlRequest(BaseModel):
    queue_name: str | None = None


def success_envelope(data: Any, trace_id: str, message: str = "ok") -> dict[str, Any]:
    return {
        "success": True,
        "data": data,
        "message": message,
        "meta": {
            "trace_id": trace_id,
        },
    }


def error_envelope(
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    trace_id: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error: dict[str, Any] = {
        "code": code,
        "message": message,
        "retryable": retryable,
        "class": error_class,
    }
    if details is not None:
        error["details"] = details
    return {
        "success": False,
        "error": error,
        "meta": {
            "trace_id": trace_id,
        },
    }
