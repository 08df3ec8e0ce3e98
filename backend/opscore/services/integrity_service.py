# Overview: Data integrity auditor; runs consistency checks, records issues and raises threshold alerts.

from __future__ import annotations

import hashlib
import logging
from collections import defaultdict
from dataclasses import asdict, dataclass, replace

from flask import current_app

from . import notification_service
from .storage_errors import StorageError
from .storage_gateway import get_gateway
from opscore.time_utils import to_utc_z, utcnow
from opscore.validation import ValidationError

logger = logging.getLogger(__name__)

"""
Integrity auditor invariants (authoritative)

- Checks are independent; a failing check is reported in failed_checks and
  the remaining checks still run.
- Every finding is stored as a new issue row on every run.
- Issues and alerts are only ever mutated to resolve or acknowledge them.
- An unacknowledged alert with the same (issue_type, fingerprint) is refreshed
  instead of dispatched again.
"""

ORPHANED_ORDER = "orphaned_order"
ORPHANED_INVOICE = "orphaned_invoice"
ORPHANED_PRODUCTION_BATCH = "orphaned_production_batch"
NEGATIVE_INVENTORY = "negative_inventory"
INVENTORY_DISCREPANCY = "inventory_discrepancy"
CRITICALLY_LOW_STOCK = "critically_low_stock"
ORPHANED_LEDGER_ENTRY = "orphaned_ledger_entry"
INVOICE_WITHOUT_LEDGER = "invoice_without_ledger"

CHANNEL_TOAST = "toast"
CHANNEL_SYSTEM = "system"
CHANNEL_EMAIL = "email"
CHANNELS = (CHANNEL_TOAST, CHANNEL_SYSTEM, CHANNEL_EMAIL)
SEVERITIES = ("low", "medium", "high", "critical")

_CONFIG_KEY = "opscore.integrity_alert_configs"


@dataclass(frozen=True)
class Finding:
    issue_type: str
    description: str
    severity: str
    entity_type: str
    entity_id: str

    @property
    def issue_key(self) -> str:
        return f"{self.issue_type.replace('_', '-')}-{self.entity_id}"

    def to_dict(self) -> dict:
        data = asdict(self)
        data["issue_key"] = self.issue_key
        return data


@dataclass(frozen=True)
class AlertConfig:
    enabled: bool
    threshold: int
    severity: str
    channels: tuple[str, ...]

    def to_dict(self) -> dict:
        return {
            "enabled": self.enabled,
            "threshold": self.threshold,
            "severity": self.severity,
            "channels": list(self.channels),
        }


DEFAULT_ALERT_CONFIGS: dict[str, AlertConfig] = {
    ORPHANED_ORDER: AlertConfig(True, 1, "high", (CHANNEL_TOAST, CHANNEL_SYSTEM)),
    ORPHANED_INVOICE: AlertConfig(True, 1, "critical", (CHANNEL_TOAST, CHANNEL_SYSTEM)),
    NEGATIVE_INVENTORY: AlertConfig(True, 1, "critical", (CHANNEL_TOAST, CHANNEL_SYSTEM)),
    ORPHANED_PRODUCTION_BATCH: AlertConfig(True, 3, "medium", (CHANNEL_TOAST,)),
    ORPHANED_LEDGER_ENTRY: AlertConfig(True, 1, "high", (CHANNEL_TOAST, CHANNEL_SYSTEM)),
    INVOICE_WITHOUT_LEDGER: AlertConfig(True, 1, "medium", (CHANNEL_TOAST,)),
}


# ----------------------------------------------------------------------
# Alert configuration
# ----------------------------------------------------------------------

def _runtime_configs() -> dict[str, AlertConfig]:
    return current_app.extensions.setdefault(_CONFIG_KEY, {})


def _apply_changes(base: AlertConfig | None, changes: dict) -> AlertConfig:
    unknown = set(changes) - {"enabled", "threshold", "severity", "channels"}
    if unknown:
        raise ValidationError(f"Unknown alert config fields: {', '.join(sorted(unknown))}")
    if base is None:
        base = AlertConfig(False, 1, "medium", (CHANNEL_TOAST,))

    values = {}
    if "enabled" in changes:
        values["enabled"] = bool(changes["enabled"])
    if "threshold" in changes:
        threshold = changes["threshold"]
        if isinstance(threshold, bool) or not isinstance(threshold, int) or threshold < 1:
            raise ValidationError("threshold must be a positive integer")
        values["threshold"] = threshold
    if "severity" in changes:
        if changes["severity"] not in SEVERITIES:
            raise ValidationError(f"severity must be one of: {', '.join(SEVERITIES)}")
        values["severity"] = changes["severity"]
    if "channels" in changes:
        channels = tuple(changes["channels"] or ())
        bad = [c for c in channels if c not in CHANNELS]
        if bad:
            raise ValidationError(f"Unknown notification channels: {', '.join(bad)}")
        values["channels"] = channels
    return replace(base, **values)


def get_alert_config(issue_type: str) -> AlertConfig | None:
    """Defaults, then INTEGRITY_ALERT_OVERRIDES, then update_alert_config changes."""
    runtime = _runtime_configs()
    if issue_type in runtime:
        return runtime[issue_type]
    config = DEFAULT_ALERT_CONFIGS.get(issue_type)
    override = current_app.config.get("INTEGRITY_ALERT_OVERRIDES", {}).get(issue_type)
    if override:
        config = _apply_changes(config, override)
    return config


def get_alert_configs() -> dict[str, dict]:
    types = set(DEFAULT_ALERT_CONFIGS) | set(current_app.config.get("INTEGRITY_ALERT_OVERRIDES", {})) | set(_runtime_configs())
    return {t: get_alert_config(t).to_dict() for t in sorted(types)}


def update_alert_config(issue_type: str, **changes) -> AlertConfig:
    config = _apply_changes(get_alert_config(issue_type), changes)
    _runtime_configs()[issue_type] = config
    logger.info("Alert config for %s updated: %s", issue_type, config.to_dict())
    return config


# ----------------------------------------------------------------------
# Checks
# ----------------------------------------------------------------------

def check_orphaned_orders() -> list[Finding]:
    """Live orders without an invoice."""
    gateway = get_gateway()
    invoiced = {row["order_id"] for row in gateway.query("invoices", notify=False)}
    orders = gateway.query("orders", {"status__ne": "cancelled"}, order_by="id", notify=False)
    return [
        Finding(
            ORPHANED_ORDER,
            f"Order {order['order_number']} has no associated invoice",
            "high",
            "order",
            str(order["id"]),
        )
        for order in orders
        if order["id"] not in invoiced
    ]


def check_orphaned_invoices() -> list[Finding]:
    gateway = get_gateway()
    order_ids = {row["id"] for row in gateway.query("orders", notify=False)}
    invoices = gateway.query("invoices", order_by="id", notify=False)
    return [
        Finding(
            ORPHANED_INVOICE,
            f"Invoice {invoice['invoice_number']} references non-existent order {invoice['order_id']}",
            "critical",
            "invoice",
            str(invoice["id"]),
        )
        for invoice in invoices
        if invoice["order_id"] not in order_ids
    ]


def check_orphaned_production_batches() -> list[Finding]:
    batches = get_gateway().query("vw_batch_yield", {"input_count": 0}, order_by="batch_id", notify=False)
    return [
        Finding(
            ORPHANED_PRODUCTION_BATCH,
            f"Production batch {batch['batch_number']} has no inputs",
            "medium",
            "production_batch",
            str(batch["batch_id"]),
        )
        for batch in batches
    ]


def _lot_label(lot: dict) -> str:
    return f"Material {lot['material_name']} lot {lot.get('lot_number') or lot['id']}"


def check_inventory_consistency() -> list[Finding]:
    """
    Negative balances, ledger discrepancies and critically low stock.

    The discrepancy recomputation is best-effort: when it fails the other two
    checks still report.
    """
    gateway = get_gateway()
    findings = []

    for lot in gateway.query("material_intake_records", {"remaining_quantity__lt": 0}, order_by="id", notify=False):
        findings.append(Finding(
            NEGATIVE_INVENTORY,
            f"{_lot_label(lot)} has negative quantity: {lot['remaining_quantity']}",
            "critical",
            "material_intake_record",
            str(lot["id"]),
        ))

    try:
        discrepancies = gateway.rpc("check_inventory_discrepancies", notify=False)
    except StorageError as exc:
        logger.info("Inventory discrepancy check skipped: %s", exc.details)
        discrepancies = []
    for row in discrepancies:
        findings.append(Finding(
            INVENTORY_DISCREPANCY,
            f"Material {row['material_name']} has discrepancy: recorded {row['recorded_quantity']}, "
            f"calculated {row['calculated_quantity']}",
            "medium",
            "material_intake_record",
            str(row["material_intake_id"]),
        ))

    fallback = float(current_app.config.get("LOW_STOCK_FALLBACK_THRESHOLD", 5))
    for lot in gateway.query("material_intake_records", {"remaining_quantity__gt": 0}, order_by="id", notify=False):
        threshold = max(lot["minimum_stock_level"] or 0, fallback)
        if lot["remaining_quantity"] < threshold:
            findings.append(Finding(
                CRITICALLY_LOW_STOCK,
                f"{_lot_label(lot)} is critically low: {lot['remaining_quantity']} remaining",
                "medium",
                "material_intake_record",
                str(lot["id"]),
            ))

    return findings


def check_financial_ledger_consistency() -> list[Finding]:
    gateway = get_gateway()
    invoices = gateway.query("invoices", order_by="id", notify=False)
    invoice_ids = {invoice["id"] for invoice in invoices}
    entries = gateway.query("financial_ledger", {"reference_type": "invoice"}, order_by="id", notify=False)

    findings = [
        Finding(
            ORPHANED_LEDGER_ENTRY,
            f"Financial ledger entry {entry['id']} references non-existent invoice {entry['reference_id']}",
            "high",
            "financial_ledger",
            str(entry["id"]),
        )
        for entry in entries
        if entry["reference_id"] not in invoice_ids
    ]

    booked = {entry["reference_id"] for entry in entries}
    findings.extend(
        Finding(
            INVOICE_WITHOUT_LEDGER,
            f"Invoice {invoice['invoice_number']} has no financial ledger entry",
            "medium",
            "invoice",
            str(invoice["id"]),
        )
        for invoice in invoices
        if invoice["id"] not in booked
    )
    return findings


CHECKS = (
    ("orphaned_orders", check_orphaned_orders),
    ("orphaned_invoices", check_orphaned_invoices),
    ("orphaned_production_batches", check_orphaned_production_batches),
    ("inventory_consistency", check_inventory_consistency),
    ("financial_ledger_consistency", check_financial_ledger_consistency),
)


# ----------------------------------------------------------------------
# Persistence and alerts
# ----------------------------------------------------------------------

def _persist_issues(findings: list[Finding], detected_at) -> list[dict]:
    """Append one issue row per finding."""
    if not findings:
        return []
    rows = [{**finding.to_dict(), "detected_at": detected_at} for finding in findings]
    return get_gateway().insert("data_integrity_issues", rows, notify=False)


def fingerprint(findings: list[Finding]) -> str:
    refs = sorted(f"{f.entity_type}:{f.entity_id}" for f in findings)
    return hashlib.sha256("|".join(refs).encode("utf-8")).hexdigest()


def alert_message(issue_type: str, count: int) -> str:
    plural = count > 1
    messages = {
        ORPHANED_ORDER: f"{count} order{'s' if plural else ''} found without associated invoices",
        ORPHANED_INVOICE: f"{count} invoice{'s' if plural else ''} found referencing non-existent orders",
        NEGATIVE_INVENTORY: f"{count} inventory item{'s' if plural else ''} with negative quantities detected",
        INVENTORY_DISCREPANCY: (
            f"{count} inventory discrepanc{'ies' if plural else 'y'} detected between recorded and calculated quantities"
        ),
        CRITICALLY_LOW_STOCK: f"{count} material{'s' if plural else ''} at critically low stock levels",
        ORPHANED_PRODUCTION_BATCH: f"{count} production batch{'es' if plural else ''} found without inputs",
        ORPHANED_LEDGER_ENTRY: f"{count} financial ledger entr{'ies' if plural else 'y'} referencing non-existent records",
        INVOICE_WITHOUT_LEDGER: f"{count} invoice{'s' if plural else ''} found without financial ledger entries",
    }
    return messages.get(issue_type, f"{count} data integrity issue{'s' if plural else ''} of type {issue_type} detected")


def _dispatch(alert: dict, config: AlertConfig) -> None:
    if CHANNEL_TOAST in config.channels:
        level = notification_service.SEVERITY_LEVELS.get(alert["severity"], notification_service.INFO)
        notification_service.notify(level, f"Data Integrity Alert: {alert['message']}", alert_id=alert["id"])

    if CHANNEL_SYSTEM in config.channels:
        try:
            notification_service.create_system_notification(
                type="data_integrity_alert",
                title="Data Integrity Alert",
                message=alert["message"],
                severity=alert["severity"],
                metadata={"alertId": alert["id"], "issueType": alert["issue_type"], "count": alert["count"]},
                target_roles=["admin"],
            )
        except StorageError as exc:
            logger.error("Could not store system notification for alert %s: %s", alert["id"], exc.details)

    if CHANNEL_EMAIL in config.channels:
        notification_service.send_email_notification(
            subject=f"Data Integrity Alert: {alert['issue_type']}",
            body=alert["message"],
            recipients_role="admin",
        )


def process_alerts(findings: list[Finding]) -> list[dict]:
    """Raise one alert per issue type whose count meets its threshold."""
    by_type: dict[str, list[Finding]] = defaultdict(list)
    for finding in findings:
        by_type[finding.issue_type].append(finding)

    alerts = []
    for issue_type, group in sorted(by_type.items()):
        config = get_alert_config(issue_type)
        if config is None or not config.enabled or len(group) < config.threshold:
            continue
        try:
            result = get_gateway().rpc(
                "upsert_integrity_alert",
                {
                    "issue_type": issue_type,
                    "fingerprint": fingerprint(group),
                    "count": len(group),
                    "severity": config.severity,
                    "message": alert_message(issue_type, len(group)),
                    "channels": list(config.channels),
                },
                notify=False,
            )
        except StorageError as exc:
            logger.error("Could not store %s alert: %s", issue_type, exc.details)
            continue

        alert = result["alert"]
        if result["created"]:
            _dispatch(alert, config)
        else:
            logger.info(
                "Alert %s for %s still unacknowledged; refreshed without dispatch (occurrences=%s)",
                alert["id"], issue_type, alert["occurrences"],
            )
        alerts.append({**alert, "dispatched": result["created"]})
    return alerts


def run_all_checks() -> dict:
    """
    Run every check, store new issues and raise alerts.

    Returns {"success", "issues", "failed_checks", "alerts", "check_time"};
    success is False when any check or the issue write failed.
    """
    check_time = utcnow()
    findings: list[Finding] = []
    failed_checks = []

    for name, check in CHECKS:
        try:
            findings.extend(check())
        except StorageError as exc:
            logger.error("Integrity check %s failed: kind=%s details=%s", name, exc.kind.value, exc.details)
            failed_checks.append({"check": name, "error": exc.message})

    persisted_ok = True
    try:
        _persist_issues(findings, check_time)
    except StorageError as exc:
        persisted_ok = False
        logger.error("Could not store integrity issues: %s", exc.details)

    alerts = process_alerts(findings)

    logger.info(
        "Integrity run finished: issues=%d failed_checks=%d alerts=%d",
        len(findings), len(failed_checks), len(alerts),
    )
    return {
        "success": persisted_ok and not failed_checks,
        "issues": [finding.to_dict() for finding in findings],
        "failed_checks": failed_checks,
        "alerts": alerts,
        "check_time": to_utc_z(check_time),
    }


# ----------------------------------------------------------------------
# Resolution and reads
# ----------------------------------------------------------------------

def resolve_issue(issue_id: int, resolution: str, actor_id: int | None = None) -> dict:
    if not resolution or not str(resolution).strip():
        raise ValidationError("A resolution description is required")
    issue = get_gateway().rpc(
        "resolve_integrity_issue",
        {"issue_id": issue_id, "resolution": str(resolution).strip(), "actor_id": actor_id},
    )
    notification_service.success("Issue resolved successfully")
    return issue


def acknowledge_alert(alert_id: int, actor_id: int | None = None) -> dict:
    alert = get_gateway().rpc(
        "acknowledge_integrity_alert",
        {"alert_id": alert_id, "actor_id": actor_id},
    )
    notification_service.success("Alert acknowledged")
    return alert


def get_unresolved_issues() -> list[dict]:
    return get_gateway().query(
        "data_integrity_issues",
        {"resolved_at__isnull": True},
        order_by=["-detected_at", "-id"],
    )


def get_issue_history(limit: int = 50) -> list[dict]:
    return get_gateway().query("data_integrity_issues", order_by=["-detected_at", "-id"], limit=limit)


def get_active_alerts() -> list[dict]:
    return get_gateway().query(
        "data_integrity_alerts",
        {"acknowledged": False},
        order_by=["-triggered_at", "-id"],
    )
