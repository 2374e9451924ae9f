"""Collaborator capabilities used by the orchestrator: knowledge enrichment and rule evaluation."""
from correlation_core.collaborators.knowledge import (
    AttackPattern,
    EnrichmentResult,
    InMemoryKnowledgeBase,
    KnowledgeContext,
    KnowledgeEnrichment,
    ThreatIntelligence,
)
from correlation_core.collaborators.oracle import (
    ORACLE_CONTRACT_VERSION,
    EvaluationContext,
    HeuristicRuleOracle,
    HttpRuleOracle,
    RuleEvaluation,
    RuleOracle,
    RuleResults,
    create_rule_oracle,
)

__all__ = [
    "AttackPattern",
    "EnrichmentResult",
    "InMemoryKnowledgeBase",
    "KnowledgeContext",
    "KnowledgeEnrichment",
    "ThreatIntelligence",
    "ORACLE_CONTRACT_VERSION",
    "EvaluationContext",
    "HeuristicRuleOracle",
    "HttpRuleOracle",
    "RuleEvaluation",
    "RuleOracle",
    "RuleResults",
    "create_rule_oracle",
]
