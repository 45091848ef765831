from .audit_logs import LOG_SOURCES, AuditLogFetcher, LogSource, build_filter, export_jsonl

__all__ = ["LOG_SOURCES", "AuditLogFetcher", "LogSource", "build_filter", "export_jsonl"]
