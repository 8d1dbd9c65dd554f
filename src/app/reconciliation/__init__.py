"""Sales reconciliation -- matching activities to won deals and fixing gaps.

Provides fuzzy matching and confidence scoring, the analysis engine
(overview, orphans, duplicates, matching, statistics), manual actions with
an undoable audit trail, and ReconciliationRepository for async persistence.
"""
