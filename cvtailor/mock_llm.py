"""
Deterministic stand-in for the generative service.

Used when MOCK_LLM_ENABLED=true or no generative key is configured. It reads
the résumé and job specification back out of the tailoring prompt and builds a
structured CV from what it can find, without inventing anything. The same
prompt always produces the same output.
"""

from __future__ import annotations

import json
import re
from typing import Any

from cvtailor.prompts import CV_SECTION_MARKER, JOB_SECTION_MARKER, prompt_section

_EMAIL_RE = re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}")
_PHONE_RE = re.compile(r"\+?\d[\d\s().-]{7,}\d")
_LINKEDIN_RE = re.compile(r"(?:https?://)?(?:[a-z]{2,3}\.)?linkedin\.com/[^\s,;|]+", re.IGNORECASE)
_GITHUB_RE = re.compile(r"(?:https?://)?(?:www\.)?github\.com/[^\s,;|]+", re.IGNORECASE)
_BULLET_RE = re.compile(r"^\s*(?:[-*•▪●]|\d+[.)])\s+(.*\S)\s*$")

TECHNICAL_VOCABULARY = (
    "Python",
    "Java",
    "JavaScript",
    "TypeScript",
    "Go",
    "Rust",
    "C++",
    "SQL",
    "PostgreSQL",
    "MySQL",
    "Redis",
    "Docker",
    "Kubernetes",
    "AWS",
    "GCP",
    "Azure",
    "Terraform",
    "Linux",
    "Git",
    "FastAPI",
    "Django",
    "Flask",
    "React",
    "Node.js",
    "Pandas",
    "Machine Learning",
)
SOFT_VOCABULARY = (
    "Communication",
    "Leadership",
    "Teamwork",
    "Collaboration",
    "Problem Solving",
    "Mentoring",
    "Time Management",
    "Stakeholder Management",
)


def _mentions(text: str, term: str) -> bool:
    pattern = r"(?<![A-Za-z0-9])" + re.escape(term.lower()) + r"(?![A-Za-z0-9])"
    return re.search(pattern, text.lower()) is not None


def _first(pattern: re.Pattern[str], text: str) -> str:
    match = pattern.search(text)
    return match.group(0).strip() if match else ""


def _guess_phone(text: str) -> str:
    for match in _PHONE_RE.finditer(text):
        # date ranges like 2019 - 2021 also match the shape
        if sum(ch.isdigit() for ch in match.group(0)) >= 9:
            return match.group(0).strip()
    return ""


def _guess_name(lines: list[str]) -> str:
    for line in lines[:5]:
        candidate = line.split("|")[0].strip()
        if not candidate or "@" in candidate or sum(ch.isdigit() for ch in candidate) > 2:
            continue
        if len(candidate.split()) <= 6:
            return candidate[:80]
    return "Candidate"


def _ranked_skills(vocabulary: tuple[str, ...], cv_text: str, job_text: str) -> list[str]:
    present = [term for term in vocabulary if _mentions(cv_text, term)]
    # skills the job asks for first, original vocabulary order otherwise
    return sorted(present, key=lambda term: (not _mentions(job_text, term), vocabulary.index(term)))


def mock_tailored_cv(prompt: str) -> dict[str, Any]:
    cv_text = prompt_section(prompt, CV_SECTION_MARKER)
    job_text = prompt_section(prompt, JOB_SECTION_MARKER)
    lines = [line.strip() for line in cv_text.splitlines() if line.strip()]
    job_lines = [line.strip() for line in job_text.splitlines() if line.strip()]

    achievements = []
    for line in lines:
        match = _BULLET_RE.match(line)
        if match:
            achievements.append(match.group(1))

    technical = _ranked_skills(TECHNICAL_VOCABULARY, cv_text, job_text)
    soft = _ranked_skills(SOFT_VOCABULARY, cv_text, job_text)
    role = job_lines[0][:120] if job_lines else "the advertised role"
    summary = f"Experienced professional applying for {role}."
    if technical:
        summary += f" Hands-on experience with {', '.join(technical[:4])}."

    experience: list[dict[str, Any]] = []
    if achievements:
        experience.append(
            {
                "job_title": "",
                "company_name": "",
                "start_date": "",
                "end_date": "",
                "location": "",
                "achievements": achievements[:8],
            }
        )

    return {
        "full_name": _guess_name(lines),
        "email": _first(_EMAIL_RE, cv_text),
        "phone_number": _guess_phone(cv_text),
        "linkedin_url": _first(_LINKEDIN_RE, cv_text),
        "portfolio_github_url": _first(_GITHUB_RE, cv_text),
        "address": "",
        "summary": summary,
        "experience": experience,
        "education": [],
        "technical_skills": ", ".join(technical),
        "soft_skills": ", ".join(soft),
    }


def mock_generate(prompt: str) -> str:
    return json.dumps(mock_tailored_cv(prompt), ensure_ascii=False)
