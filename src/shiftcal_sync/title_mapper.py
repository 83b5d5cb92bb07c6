"""Title conventions shared between the local calendar and Google Calendar.

Events created before the event type was stored in extended properties only
carry their meaning in the title, e.g. ``"박혜지 대휴"`` (leave) or
``"홍길동, 김영희 안전교육"`` (training). Inbound, these titles are recognized
and turned into an event type plus structured description lines; outbound,
training titles get their participant list prepended again so that clients
without extended-property support still see who attends.
"""

import re
from typing import List, NamedTuple, Optional

DEFAULT_EVENT_TYPE = "일반"
VACATION_EVENT_TYPE = "휴가"
EDUCATION_EVENT_TYPE = "교육"

VACATION_TARGET_PREFIX = "휴가대상: "
VACATION_TYPE_PREFIX = "휴가종류: "
EDUCATION_TARGET_PREFIX = "교육대상: "

VACATION_TYPES = ("장기휴가", "연차", "대휴", "시간차")

_NAME = r"[가-힣]{2,4}"
_NAMES = rf"({_NAME}(?:\s*,\s*{_NAME})*)"

VACATION_TITLE_RE = re.compile(
    rf"^{_NAMES}\s+(대휴|연차|시간차(?:\([^)]+\))?|장기휴가)$"
)
EDUCATION_TITLE_RE = re.compile(
    rf"^{_NAMES}\s+(.+(?:교육|훈련).*)$"
)


class InferredMetadata(NamedTuple):
    event_type: str
    summary: str
    description: str


class VacationInfo(NamedTuple):
    targets: List[str]
    vacation_type: Optional[str]
    clean_description: str


class EducationTargets(NamedTuple):
    targets: List[str]
    clean_description: str


def _parse_names(raw: str) -> List[str]:
    return [name.strip() for name in raw.split(',') if name.strip()]


def _has_line(description: str, prefix: str) -> bool:
    return any(line.startswith(prefix) for line in description.split('\n'))


def _prepend_line(description: str, line: str) -> str:
    return f"{line}\n{description}" if description else line


def _find_targets(description: str, prefix: str) -> List[str]:
    for line in description.split('\n'):
        if line.startswith(prefix):
            return _parse_names(line[len(prefix):])
    return []


def _with_vacation_lines(description: str, names: List[str], vacation_type: str) -> str:
    if not _has_line(description, VACATION_TARGET_PREFIX):
        description = _prepend_line(description, f"{VACATION_TARGET_PREFIX}{', '.join(names)}")
    if not _has_line(description, VACATION_TYPE_PREFIX):
        lines = description.split('\n')
        type_line = f"{VACATION_TYPE_PREFIX}{vacation_type}"
        for index, line in enumerate(lines):
            if line.startswith(VACATION_TARGET_PREFIX):
                lines.insert(index + 1, type_line)
                description = '\n'.join(lines)
                break
        else:
            description = _prepend_line(description, type_line)
    return description


def infer_event_metadata(
    summary: str,
    description: str,
    event_type: str,
    infer_type: bool = True
) -> InferredMetadata:
    """Derive event type, summary and description from a remote title.

    * ``일반`` with ``infer_type``: leave titles become ``휴가`` with target
      and kind lines added to the description; training titles become
      ``교육`` with the participant names moved from the summary into a
      target line.
    * ``교육``: the participant prefix added by :func:`to_google_summary` is
      stripped again.
    * ``휴가``: missing target/kind lines are filled in from the title.

    Any other type, and an explicit ``일반``, passes through untouched.
    """
    summary = summary or ""
    description = description or ""

    if event_type == DEFAULT_EVENT_TYPE:
        if not infer_type:
            return InferredMetadata(event_type, summary, description)
        match = VACATION_TITLE_RE.match(summary)
        if match:
            names = _parse_names(match.group(1))
            description = _with_vacation_lines(description, names, match.group(2))
            return InferredMetadata(VACATION_EVENT_TYPE, summary, description)

        match = EDUCATION_TITLE_RE.match(summary)
        if match:
            names = _parse_names(match.group(1))
            if not _has_line(description, EDUCATION_TARGET_PREFIX):
                description = _prepend_line(description, f"{EDUCATION_TARGET_PREFIX}{', '.join(names)}")
            return InferredMetadata(EDUCATION_EVENT_TYPE, match.group(2).strip(), description)

        return InferredMetadata(event_type, summary, description)

    if event_type == EDUCATION_EVENT_TYPE:
        targets = _find_targets(description, EDUCATION_TARGET_PREFIX)
        if targets:
            pattern = r'\s*,\s*'.join(re.escape(name) for name in targets)
            cleaned = re.sub(rf"^{pattern}\s+", "", summary, count=1)
            return InferredMetadata(event_type, cleaned, description)
        return InferredMetadata(event_type, summary, description)

    if event_type == VACATION_EVENT_TYPE:
        match = VACATION_TITLE_RE.match(summary)
        if match:
            names = _parse_names(match.group(1))
            description = _with_vacation_lines(description, names, match.group(2))
        return InferredMetadata(event_type, summary, description)

    return InferredMetadata(event_type, summary, description)


def to_google_summary(summary: str, description: Optional[str], event_type: str) -> str:
    """Build the title sent to Google Calendar for a local event."""
    if event_type == EDUCATION_EVENT_TYPE:
        targets = _find_targets(description or "", EDUCATION_TARGET_PREFIX)
        if targets:
            return f"{', '.join(targets)} {summary}"
    return summary


def parse_vacation_info(description: Optional[str]) -> VacationInfo:
    """Split a leave description into targets, kind and the free-text remainder."""
    targets: List[str] = []
    vacation_type = None
    remaining = []

    for line in (description or "").split('\n'):
        if line.startswith(VACATION_TARGET_PREFIX):
            targets = _parse_names(line[len(VACATION_TARGET_PREFIX):])
        elif line.startswith(VACATION_TYPE_PREFIX):
            vacation_type = line[len(VACATION_TYPE_PREFIX):].strip() or vacation_type
        else:
            remaining.append(line)

    return VacationInfo(targets, vacation_type, '\n'.join(remaining).lstrip())


def serialize_vacation_info(targets: List[str], vacation_type: Optional[str], description: str) -> str:
    lines = []
    if targets:
        lines.append(f"{VACATION_TARGET_PREFIX}{', '.join(targets)}")
    if vacation_type:
        lines.append(f"{VACATION_TYPE_PREFIX}{vacation_type}")
    if description:
        lines.append(description)
    return '\n'.join(lines)


def parse_education_targets(description: Optional[str]) -> EducationTargets:
    """Read the participant line that leads a training description."""
    description = description or ""
    lines = description.split('\n')
    if lines[0].startswith(EDUCATION_TARGET_PREFIX):
        targets = _parse_names(lines[0][len(EDUCATION_TARGET_PREFIX):])
        return EducationTargets(targets, '\n'.join(lines[1:]).lstrip())
    return EducationTargets([], description)
