"""
Prompt text for CV tailoring.

The prompt is a pure function of the two input texts: same résumé and job
specification always produce the same prompt string.
"""

from __future__ import annotations

import json
from typing import Any

CV_SECTION_MARKER = "### ORIGINAL CV"
JOB_SECTION_MARKER = "### JOB SPECIFICATION"
TEMPLATE_SECTION_MARKER = "### CV TEMPLATE JSON STRUCTURE"
OUTPUT_MARKER = "### TAILORED CV (JSON OUTPUT ONLY)"
SECTION_MARKERS = (CV_SECTION_MARKER, JOB_SECTION_MARKER, TEMPLATE_SECTION_MARKER, OUTPUT_MARKER)

CV_JSON_TEMPLATE: dict[str, Any] = {
    "full_name": "",
    "email": "",
    "phone_number": "",
    "linkedin_url": "",
    "portfolio_github_url": "",
    "address": "",
    "summary": "",
    "experience": [
        {
            "job_title": "",
            "company_name": "",
            "start_date": "",
            "end_date": "",
            "location": "",
            "achievements": [""],
        }
    ],
    "education": [
        {
            "degree_name": "",
            "university_name": "",
            "location": "",
            "start_date": "",
            "end_date": "",
            "details": [""],
        }
    ],
    "technical_skills": "",
    "soft_skills": "",
}

_TAILORING_INSTRUCTIONS = """You are a professional CV tailoring assistant. Rewrite the original CV so it reads as if it was written for the job specification below.

Language alignment:
1. Reuse the exact technical terms, industry vocabulary and key phrases of the job specification where they truthfully describe the candidate.
2. Match the formality and voice of the job specification.
3. Work relevant job specification keywords into the summary and the experience bullet points.

Strict accuracy rules:
1. Never invent employers, job titles, dates, degrees, institutions, certifications, metrics or skills that are not in the original CV.
2. Keep every professional experience entry from the original CV. Do not rename job titles or companies and do not add roles.
3. Rephrase achievements to emphasise relevance and transferable skills, but keep them factually true to the original.
4. Education keeps its factual content; only the wording may change.
5. List only skills present in the original CV, ordered by relevance to the job specification.
6. When a field cannot be filled from the original CV, use an empty string or an empty array.

Section guidance:
- summary: 3 to 5 sentences describing the candidate's real strengths and goals.
- experience[].achievements and education[].details: arrays of short strings.
- technical_skills and soft_skills: comma-separated strings.

Output format: return ONE JSON object that follows the CV template structure exactly. No markdown, no comments, no text before or after the JSON."""


def build_tailoring_prompt(*, cv_text: str, job_spec_text: str) -> str:
    template = json.dumps(CV_JSON_TEMPLATE, indent=2, ensure_ascii=False)
    return (
        f"{_TAILORING_INSTRUCTIONS}\n\n"
        f"{CV_SECTION_MARKER}\n{cv_text.strip()}\n\n"
        f"{JOB_SECTION_MARKER}\n{job_spec_text.strip()}\n\n"
        f"{TEMPLATE_SECTION_MARKER}\n{template}\n\n"
        f"{OUTPUT_MARKER}\n"
    )


def prompt_section(prompt: str, marker: str) -> str:
    """Text between ``marker`` and the section marker that follows it, or "" when absent.

    Sections are delimited by the known markers only, so Markdown headings
    inside the CV or job specification stay part of their section.
    """
    start = prompt.find(f"{marker}\n")
    if start < 0:
        return ""
    body = prompt[start + len(marker) + 1 :]
    try:
        following = SECTION_MARKERS[SECTION_MARKERS.index(marker) + 1 :]
    except ValueError:
        following = ()
    for next_marker in following:
        end = body.find(f"\n{next_marker}\n")
        if end >= 0:
            return body[:end].strip()
    return body.strip()
