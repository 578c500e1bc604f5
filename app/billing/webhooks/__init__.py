"""
Processor webhook ingestion.

Modules:
    handlers: Handler registry keyed by normalized event kind
    ingestion: Verify, deduplicate, dispatch, mark processed
    views: HTTP endpoint
"""
