# Usage Ledger Module
from .usage import UsageLedger, fingerprint_index, user_index, GLOBAL_INDEX

__all__ = ["UsageLedger", "fingerprint_index", "user_index", "GLOBAL_INDEX"]
