# src/dashboard_client/domain_definitions.py

"""
Entity domains and aggregates exposed by the dashboard API.

Writes to a domain invalidate the aggregates listed in its `dependents`;
creates also invalidate the domain itself since server-side totals and
pagination change.
"""

from .aggregate_cache import AggregateConfig
from .entity_cache import DomainConfig, TTLClass

DEALS = DomainConfig(
    name="deals",
    path="/deals",
    list_key="deals",
    update_method="PUT",
    dependents=("analytics",),
    default_filters={"stage": "all", "brand": "all", "dateRange": "all", "search": ""},
)

INVOICES = DomainConfig(
    name="invoices",
    path="/invoices",
    list_key="invoices",
    update_method="PUT",
    create_path="/invoices/create-individual",
    create_variants={
        "individual": "/invoices/create-individual",
        "consolidated": "/invoices/create-consolidated",
    },
    dependents=("analytics",),
    default_filters={"status": "all", "dateRange": "all", "search": ""},
)

BRIEFS = DomainConfig(
    name="briefs",
    path="/briefs",
    list_key="briefs",
    update_method="PATCH",
    create_path="/briefs/create-text",
    dependents=("brief_stats",),
    default_filters={"status": "all", "type": "all", "search": ""},
)

CONTRACTS = DomainConfig(
    name="contracts",
    path="/contracts",
    list_key="contracts",
    id_field="id",
    update_method="PATCH",
    detail_key="contract",
    dependents=("contract_analytics", "contract_activity"),
    default_filters={
        "status": "",
        "brandName": "",
        "riskLevel": "",
        "search": "",
        "sortBy": "createdAt",
        "sortOrder": "desc",
    },
    bulk_update_path="/contracts/bulk-status",
    bulk_delete_path="/contracts/bulk-delete",
    bulk_ids_key="contractIds",
    # Contracts come from parsed uploads and change through their status endpoint
    upload_path="/contracts/upload",
    status_suffix="status",
    operations=frozenset({"upload", "status", "delete", "bulk"}),
)

RATE_CARDS = DomainConfig(
    name="rate_cards",
    path="/ratecards",
    list_key="rateCards",
    update_method="PUT",
    page_limit=10,
)

SCRIPTS = DomainConfig(
    name="scripts",
    path="/scripts",
    list_key="scripts",
    update_method="PATCH",
    create_path="/scripts/create-text",
    dependents=("script_stats",),
)

DOMAINS = (DEALS, INVOICES, BRIEFS, CONTRACTS, RATE_CARDS, SCRIPTS)

AGGREGATES = (
    AggregateConfig(
        name="analytics",
        path="/analytics/dashboard",
        ttl=TTLClass.LONG,
        default_params={"period": "month"},
    ),
    AggregateConfig(name="contract_analytics", path="/contracts/analytics", ttl=TTLClass.LONG),
    AggregateConfig(
        name="contract_activity",
        path="/contracts/activity",
        subject_path="/contracts/{id}/activity",
        value_key="activities",
        ttl=TTLClass.MEDIUM,
        default_params={"limit": 10},
    ),
    AggregateConfig(
        name="upload_limits", path="/contracts/upload-limits", ttl=TTLClass.VERY_LONG
    ),
    AggregateConfig(name="brief_stats", path="/briefs/dashboard/stats", ttl=TTLClass.MEDIUM),
    AggregateConfig(name="script_stats", path="/scripts/dashboard/stats", ttl=TTLClass.MEDIUM),
)
