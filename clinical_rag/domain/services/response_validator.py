"""Response Validation.

Post-generation safety checks. Issues are warnings attached to the response:
they never block delivery, but PHI found in generated text is redacted before
the text is handed back.
"""

import logging
import re
from typing import Optional

from clinical_rag.domain.models import ClinicalResponse, ValidationReport
from clinical_rag.domain.services.phi_detector import DEFAULT_DETECTOR, PHIDetector

logger = logging.getLogger(__name__)

DEFAULT_MIN_CONFIDENCE = 0.3

ISSUE_PHI = "Response contains potential PHI"
ISSUE_LOW_CONFIDENCE = "Low confidence in response - limited relevant context found"
ISSUE_NO_DISCLAIMER = "Response may lack appropriate medical disclaimers"

_CONSULTATION_CUE = re.compile(r"consult|healthcare", re.IGNORECASE)


class ResponseValidator:
    """Checks generated responses for PHI, confidence and a consultation cue."""

    def __init__(self, detector: Optional[PHIDetector] = None, min_confidence: float = DEFAULT_MIN_CONFIDENCE):
        self.detector = detector or DEFAULT_DETECTOR
        self.min_confidence = min_confidence

    def validate(self, response: ClinicalResponse) -> tuple[ClinicalResponse, ValidationReport]:
        """Validate a response.

        Parameters:
            response: Generated response

        Returns:
            tuple: (response safe to deliver, validation report). The returned
                response is the original unless PHI had to be redacted.
        """
        issues: list[str] = []
        delivered = response

        if self.detector.contains_phi(response.generated_text):
            issues.append(ISSUE_PHI)
            redacted, matches = self.detector.redact(response.generated_text)
            logger.warning(f"Generated response contained PHI: {self.detector.summarize(matches)}")
            delivered = response.model_copy(update={"generated_text": redacted})

        if response.confidence < self.min_confidence:
            issues.append(ISSUE_LOW_CONFIDENCE)

        if not _CONSULTATION_CUE.search(delivered.generated_text):
            issues.append(ISSUE_NO_DISCLAIMER)

        return delivered, ValidationReport(is_valid=not issues, issues=issues)
