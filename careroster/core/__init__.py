"""Cross-cutting infrastructure: logging, errors, audit trail."""
