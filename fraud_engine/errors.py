"""
Engine Error Taxonomy

Only FingerprintingFailed is allowed to abort an assessment. Everything
else either degrades to "rule did not trigger" inside the rule engine or
is returned to the administrative caller that made the request.
"""


class FraudEngineError(Exception):
    """Base class for all engine errors."""
    pass


class FingerprintingFailed(FraudEngineError):
    """Raised when signals cannot be normalized into a fingerprint identity."""
    pass


class RuleEvaluationError(FraudEngineError):
    """Raised inside a rule evaluator; always converted to a non-triggering result."""

    def __init__(self, rule_id: str, message: str):
        super().__init__(f"{rule_id}: {message}")
        self.rule_id = rule_id


class FingerprintNotFound(FraudEngineError):
    """Raised by administrative writes (blacklist, reset) on unseen fingerprint ids."""

    def __init__(self, fingerprint_id: str):
        super().__init__(f"Fingerprint '{fingerprint_id}' not found")
        self.fingerprint_id = fingerprint_id


class RuleNotFound(FraudEngineError):
    """Raised by the rule CRUD path for unknown rule ids."""

    def __init__(self, rule_id: str):
        super().__init__(f"Rule '{rule_id}' not found")
        self.rule_id = rule_id


class RuleValidationError(FraudEngineError):
    """Raised when a rule definition is rejected by the admin path."""
    pass


class AssessmentNotFound(FraudEngineError):
    """Raised when a review outcome references an unknown assessment."""

    def __init__(self, assessment_id: str):
        super().__init__(f"Assessment '{assessment_id}' not found")
        self.assessment_id = assessment_id


class ConcurrentModification(FraudEngineError):
    """Raised after optimistic writes to one key keep conflicting past the retry bound."""

    def __init__(self, key: str, attempts: int):
        super().__init__(f"Concurrent modification of '{key}' after {attempts} attempts")
        self.key = key
        self.attempts = attempts
