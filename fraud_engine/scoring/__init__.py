# Risk Scoring Module
from .aggregator import RiskAggregator, combine_scores, recommend

__all__ = ["RiskAggregator", "combine_scores", "recommend"]
