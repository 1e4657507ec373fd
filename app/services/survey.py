from __future__ import annotations

from typing import Any

PILOT_SURVEY_VERSION = "2025-07-10@pilot"

_NO_ASSISTANCE_NEEDED = ["NO_HELP"]


def _flags_for_pilot(survey: dict[str, Any]) -> list[str]:
    flags: list[str] = []
    if survey.get("mentalHealth") in {"NOT_GREAT", "STRUGGLING"}:
        flags.append("mentalHealth")
    assistance = survey.get("assistance")
    if assistance is not None and list(assistance) != _NO_ASSISTANCE_NEEDED:
        flags.append("assistance")
    if survey.get("callback") == "YES":
        flags.append("callback")
    return flags


def flagged_survey_responses(survey: dict[str, Any] | None) -> list[str]:
    """Names of survey answers a practitioner should look at. Unknown versions flag nothing."""
    if not survey:
        return []
    if survey.get("version") == PILOT_SURVEY_VERSION:
        return _flags_for_pilot(survey)
    return []


def requested_callback(survey: dict[str, Any] | None) -> bool:
    return bool(survey) and survey.get("callback") == "YES"
