"""PHI Detection and Redaction Service.

This module provides the PHIDetector responsible for identifying and masking
Protected Health Information (PHI) in clinical text before it reaches the
embedding stage, the vector store, the audit trail or a generated response.

Security Impact:
    - Detection is pattern-based and BEST-EFFORT: it is not a certified
      de-identification engine. Identifiers with no matching rule (street
      addresses, free-standing names without a label, etc.) are accepted
      false negatives, not errors. Integrators must not treat a clean result
      as a guarantee that text is PHI-free.
    - Every rule runs independently over the original text, so overlapping
      matches from different rules are all reported
    - Mask tokens (``[SSN_MASKED]``, ...) lie outside every rule's value
      alphabet and never re-match; redaction iterates until the output is clean
    - All methods are pure: no external state, deterministic for identical input

Architecture:
    - Pure domain service with zero infrastructure dependencies
    - Rules are a registry of (kind, pattern, value group) entries; new kinds
      are added by registering entries, not by subclassing
"""

import logging
import re
from dataclasses import dataclass
from typing import Iterable, Iterator, Optional, Sequence

from clinical_rag.domain.enums import PHIKind
from clinical_rag.domain.models import PHIMatch
from clinical_rag.domain.ports import ValidationError

logger = logging.getLogger(__name__)

# Upper bound on re-scan passes in redact(); masking converges in one pass for
# the default rules
MAX_REDACTION_PASSES = 5


@dataclass(frozen=True)
class PHIRule:
    """One detection rule.

    Parameters:
        kind: PHI category this rule recognizes
        pattern: Compiled pattern applied to the whole text
        value_group: Named group holding the PHI value for labeled rules
            (e.g. ``DOB: <value>``); only that span is reported and masked so the
            label stays readable. None means the whole match is PHI.
    """

    kind: PHIKind
    pattern: re.Pattern
    value_group: Optional[str] = None

    def spans(self, text: str) -> Iterator[tuple[int, int]]:
        for match in self.pattern.finditer(text):
            start, end = match.span(self.value_group) if self.value_group else match.span()
            if end > start:
                yield start, end


# Labels are case-insensitive via scoped flags. Name values stay case-sensitive so
# "Patient: diagnosed with" is not mistaken for a name; identifier values take
# either case but need a digit so "MRN review" is left alone
DEFAULT_RULES: tuple[PHIRule, ...] = (
    PHIRule(PHIKind.SSN, re.compile(r'\b\d{3}-\d{2}-\d{4}\b')),
    PHIRule(
        PHIKind.MRN,
        re.compile(
            r'\b(?i:MRN|MR#|Medical Record)(?:\s*(?i:number|no\.?|#))?[\s:]*'
            r'(?P<value>(?=[A-Za-z]*\d)[A-Za-z0-9]{6,})\b'
        ),
        "value",
    ),
    PHIRule(
        PHIKind.NAME,
        re.compile(r'\b(?i:Patient|Pt|Name)[\s:]*(?P<value>[A-Z][a-z]+ [A-Z][a-z]+)\b'),
        "value",
    ),
    PHIRule(
        PHIKind.DOB,
        re.compile(r'\b(?i:DOB|Date of Birth)[\s:]*(?P<value>\d{1,2}[/-]\d{1,2}[/-]\d{2,4})\b'),
        "value",
    ),
    PHIRule(PHIKind.PHONE, re.compile(r'\b\d{3}[-.]?\d{3}[-.]?\d{4}\b')),
    PHIRule(PHIKind.EMAIL, re.compile(r'\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b')),
    PHIRule(
        PHIKind.ACCOUNT_NUMBER,
        re.compile(
            r'\b(?i:Account|Policy|Insurance)(?:\s*(?i:number|no\.?|#))?[\s:]*'
            r'(?P<value>(?=[A-Za-z]*\d)[A-Za-z0-9]{8,})\b'
        ),
        "value",
    ),
    PHIRule(
        PHIKind.FACILITY_CONTEXT,
        re.compile(
            r'\b(?i:at|from|admitted to)\s+'
            r'(?P<value>(?:[A-Z][a-z]+\s+)+(?:Hospital|Medical Center|Clinic))'
        ),
        "value",
    ),
)


class PHIDetector:
    """Pattern-based PHI detector and redactor.

    Example:
        ```python
        detector = PHIDetector()
        text, matches = detector.redact("Patient: John Smith, DOB: 01/02/1980")
        # text == "Patient: [PATIENTNAME_MASKED], DOB: [DOB_MASKED]"
        ```
    """

    def __init__(self, rules: Optional[Sequence[PHIRule]] = None):
        self._rules: tuple[PHIRule, ...] = tuple(rules) if rules is not None else DEFAULT_RULES

    @property
    def rules(self) -> tuple[PHIRule, ...]:
        return self._rules

    def with_rule(self, rule: PHIRule) -> "PHIDetector":
        """Return a new detector with ``rule`` appended to the registry."""
        return PHIDetector(self._rules + (rule,))

    def detect(self, text: str) -> list[PHIMatch]:
        """Find every PHI span recognized by any rule.

        Rules are applied independently over the original text; overlapping
        matches from different rules are all reported. Matches are ordered by
        offset, then by rule registration order.

        Parameters:
            text: Text to scan (None or empty yields no matches)

        Returns:
            list[PHIMatch]: All matches, in position order
        """
        if not text:
            return []

        matches: list[tuple[int, int, PHIMatch]] = []
        for rule_index, rule in enumerate(self._rules):
            for start, end in rule.spans(text):
                matches.append((
                    start,
                    rule_index,
                    PHIMatch(kind=rule.kind, matched_text=text[start:end], offset=start, end=end),
                ))
        matches.sort(key=lambda item: (item[0], item[1]))
        return [match for _, _, match in matches]

    def contains_phi(self, text: str) -> bool:
        if not text:
            return False
        return any(True for rule in self._rules for _ in rule.spans(text))

    def redact(self, text: str) -> tuple[str, list[PHIMatch]]:
        """Replace every PHI span with its kind's mask token.

        Overlapping spans resolve leftmost-first (longest on equal starts).
        The output is re-scanned and masked again until no rule matches, so
        ``contains_phi(redact(text)[0])`` is False for the default rules.

        Parameters:
            text: Text to redact

        Returns:
            tuple: (redacted text, matches found on the original text)
        """
        if not text:
            return text, []

        matches = self.detect(text)
        if not matches:
            return text, []

        redacted = self._apply_masks(text, matches)
        for _ in range(MAX_REDACTION_PASSES):
            residual = self.detect(redacted)
            if not residual:
                break
            redacted = self._apply_masks(redacted, residual)
        else:
            if self.contains_phi(redacted):
                logger.warning("Redaction did not converge; output may still contain PHI")

        logger.debug(f"Redacted {len(matches)} PHI span(s): {self.summarize(matches)}")
        return redacted, matches

    def remove(self, text: str) -> str:
        """Drop every PHI span entirely and collapse the remaining whitespace."""
        if not text:
            return text
        stripped = text
        for _ in range(MAX_REDACTION_PASSES):
            matches = self.detect(stripped)
            if not matches:
                break
            stripped = self._apply_masks(stripped, matches, replacement="")
        return re.sub(r'\s+', ' ', stripped).strip()

    def verify_clean(self, text: str, source: Optional[str] = None) -> None:
        """Raise if any rule still matches ``text``.

        Raises:
            ValidationError: With the offending kinds and counts (never values)
        """
        residual = self.detect(text)
        if residual:
            raise ValidationError(
                "Text still contains PHI after redaction",
                source=source,
                details={"phi_kinds": self.summarize(residual)}
            )

    @staticmethod
    def summarize(matches: Iterable[PHIMatch]) -> dict[str, int]:
        """Count matches per PHI kind, keyed by kind value, in first-seen order."""
        counts: dict[str, int] = {}
        for match in matches:
            counts[match.kind.value] = counts.get(match.kind.value, 0) + 1
        return counts

    @staticmethod
    def _apply_masks(text: str, matches: Sequence[PHIMatch], replacement: Optional[str] = None) -> str:
        ordered = sorted(matches, key=lambda m: (m.offset, -m.length))
        parts: list[str] = []
        cursor = 0
        for match in ordered:
            if match.offset < cursor:
                continue
            parts.append(text[cursor:match.offset])
            parts.append(match.kind.mask_token if replacement is None else replacement)
            cursor = match.end
        parts.append(text[cursor:])
        return "".join(parts)


DEFAULT_DETECTOR = PHIDetector()
