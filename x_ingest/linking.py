from __future__ import annotations

import json
from datetime import datetime, timezone

from dateutil import parser as date_parser
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

BEGIN_MARKER = "<!-- X-LINKING-BEGIN"
END_MARKER = "X-LINKING-END -->"


class MalformedLinkingData(ValueError):
    """Raised when a linking section is present but cannot be used."""


def _require_text(value: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError("must be a non-empty string")
    return value


def _require_instant(value: str) -> str:
    _require_text(value)
    try:
        parsed = date_parser.isoparse(value)
    except (ValueError, OverflowError) as e:
        raise ValueError(f"must be an ISO-8601 datetime: {e}") from e
    if parsed.tzinfo is None:
        raise ValueError("must carry a UTC offset")
    return value


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class LinkedXAccount(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True, populate_by_name=True)

    x_username: str = Field(alias="xUsername")
    x_user_id: str = Field(alias="xUserId")
    linked_at: str = Field(alias="linkedAt")
    linking_proof: str = Field(alias="linkingProof")

    @field_validator("x_username", "x_user_id", "linking_proof")
    @classmethod
    def _non_empty(cls, v: str) -> str:
        return _require_text(v)

    @field_validator("linked_at")
    @classmethod
    def _instant(cls, v: str) -> str:
        return _require_instant(v)


class LinkingData(BaseModel):
    """The claim committed into a profile README."""

    model_config = ConfigDict(extra="ignore", frozen=True, populate_by_name=True)

    last_updated: str = Field(alias="lastUpdated")
    x_account: LinkedXAccount = Field(alias="xAccount")

    @field_validator("last_updated")
    @classmethod
    def _instant(cls, v: str) -> str:
        return _require_instant(v)

    @classmethod
    def for_account(
        cls,
        *,
        x_username: str,
        x_user_id: str,
        linking_proof: str,
        linked_at: str | None = None,
        last_updated: str | None = None,
    ) -> "LinkingData":
        now = _utc_now_iso()
        return cls(
            last_updated=last_updated or now,
            x_account=LinkedXAccount(
                x_username=x_username,
                x_user_id=x_user_id,
                linked_at=linked_at or now,
                linking_proof=linking_proof,
            ),
        )

    def to_json_dict(self) -> dict[str, object]:
        return self.model_dump(mode="json", by_alias=True)


def _section_bounds(text: str, start: int = 0) -> tuple[int, int] | None:
    begin = text.find(BEGIN_MARKER, start)
    if begin == -1:
        return None
    end = text.find(END_MARKER, begin + len(BEGIN_MARKER))
    if end == -1:
        return None
    return begin, end + len(END_MARKER)


def parse_linking_data(text: str) -> LinkingData | None:
    """
    Parse the linking section out of free-form README text.

    Returns None when there is no (well-ordered) section. Raises MalformedLinkingData when the
    section holds invalid JSON, fails schema validation, or is followed by a second section.
    """
    content = text or ""
    bounds = _section_bounds(content)
    if bounds is None:
        return None

    begin, end = bounds
    if BEGIN_MARKER in content[end:]:
        raise MalformedLinkingData("more than one linking section present")

    body = content[begin + len(BEGIN_MARKER) : end - len(END_MARKER)].strip()
    try:
        raw = json.loads(body)
    except json.JSONDecodeError as e:
        raise MalformedLinkingData(f"linking section is not valid JSON: {e}") from e

    if not isinstance(raw, dict):
        raise MalformedLinkingData("linking section must hold a JSON object")

    try:
        return LinkingData.model_validate(raw)
    except ValidationError as e:
        raise MalformedLinkingData(f"linking section failed validation: {e}") from e


def extract_linking_data(text: str) -> LinkingData | None:
    try:
        return parse_linking_data(text)
    except MalformedLinkingData:
        return None


def render_linking_section(data: LinkingData) -> str:
    payload = json.dumps(data.to_json_dict(), indent=2, ensure_ascii=False)
    return f"{BEGIN_MARKER}\n{payload}\n{END_MARKER}"


def _strip_orphan_markers(text: str) -> str:
    out = text
    while BEGIN_MARKER in out or END_MARKER in out:
        out = out.replace(BEGIN_MARKER, "").replace(END_MARKER, "")
    return out


def _strip_sections(text: str) -> str:
    out = text
    while True:
        bounds = _section_bounds(out)
        if bounds is None:
            return _strip_orphan_markers(out)
        begin, end = bounds
        out = out[:begin].rstrip() + out[end:]


def upsert_linking_section(text: str, data: LinkingData) -> str:
    """
    Replace the existing linking section in place, or append a new one.

    Additional sections after the first are removed, as are unpaired markers, so the result
    always holds exactly one section.
    """
    current = text or ""
    section = render_linking_section(data)

    bounds = _section_bounds(current)
    if bounds is not None:
        begin, end = bounds
        return _strip_orphan_markers(current[:begin]) + section + _strip_sections(current[end:])

    current = _strip_orphan_markers(current)
    base = current.rstrip()
    if not base:
        return section

    separator = "\n" if current.endswith("\n") else "\n\n"
    return base + separator + section
