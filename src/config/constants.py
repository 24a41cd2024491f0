"""
Fixed vocabularies and limits shared by ingestion, classification and evaluation.
"""

MAX_TITLE_CHARS = 200
MAX_BODY_CHARS = 8000
MAX_TIER_CHARS = 50

THEME_TAXONOMY = [
    "Docs confusion",
    "Billing/pricing",
    "Performance/latency",
    "Reliability/outage",
    "Authentication/access",
    "Dashboard UX",
    "API ergonomics",
    "Limits/quotas",
    "Feature request",
]

ALLOWED_SOURCES = [
    "app",
    "email",
    "slack",
    "intercom",
    "web",
    "api",
    "golden",
    "discord",
    "twitter",
    "github",
    "github issue",
    "community forum",
    "salesforce",
    "salesforce note",
    "hacker news",
    "zendesk",
    "stackoverflow",
    "stack overflow",
    "reddit",
    "g2 crowd",
    "spambot",
]

# Keys the classifier must return, in prompt order
ANALYSIS_FIELDS = [
    "summary",
    "theme",
    "sentiment_label",
    "sentiment_score",
    "urgency_score",
    "proposed_fix",
    "suggested_owner",
]

# Seed / ingestion skip reasons
REASON_ALREADY_EXISTS = "Already exists"
REASON_VALIDATION_FAILED = "Validation failed"
REASON_DUPLICATE_ID = "Duplicate id"

# Eval case notes
NOTE_ANALYSIS_FAILED = "Analysis failed"
NOTE_RECALL_MISS = "Recall miss"
NOTE_INDEX_NOT_CONFIGURED = "Vectorize not configured"
NOTE_EMBEDDING_FAILED = "Embedding failed"
NOTE_INDEX_QUERY_FAILED = "Vector query failed"
