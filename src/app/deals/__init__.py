"""Deal management module -- truth fields, clarity, health alerts and momentum nudges.

Provides SQLAlchemy models (deals, companies, contacts, truth fields, close
plan items, scores, health rules/alerts, migration reviews), the pure
clarity and momentum scoring in truth.py, alert evaluation, the Slack
momentum nudge service and its scheduler, and DealRepository for async CRUD.
"""
