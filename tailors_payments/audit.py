import logging

audit_logger = logging.getLogger("tailors_payments.audit")


def track_event(name: str, properties=None):
    properties = dict(properties or {})
    audit_logger.info("%s %s", name, properties, extra={"event": name, "properties": properties})


def track_exception(error: BaseException, properties=None):
    properties = dict(properties or {})
    audit_logger.error(
        "Exception %s: %s %s",
        type(error).__name__,
        error,
        properties,
        extra={"event": "Exception", "properties": properties},
    )
