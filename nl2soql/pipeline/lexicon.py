"""Process-wide vocabulary: synonyms, keyword sets and platform object tables.

Everything here is built once at import time and exposed through read-only
containers (tuples, frozensets, mapping proxies).
"""

from __future__ import annotations

from types import MappingProxyType
from typing import Dict, Mapping, Tuple


def _freeze(mapping: Dict[str, Tuple[str, ...]]) -> Mapping[str, Tuple[str, ...]]:
    return MappingProxyType({key: tuple(values) for key, values in mapping.items()})

STANDARD_OBJECT_SYNONYMS: Mapping[str, Tuple[str, ...]] = _freeze(
    {
        "Account": ("acct", "acc", "company", "companies", "organization", "client", "customer", "business", "vendor"),
        "Contact": ("con", "person", "people", "individual"),
        "Opportunity": ("opp", "oppty", "deal", "deals", "potential sale", "pipeline"),
        "Lead": ("ld", "prospect", "potential customer", "suspect", "inquiry"),
        "Case": ("ticket", "tickets", "issue", "problem", "incident", "support request", "complaint"),
        "Task": ("todo", "action item", "reminder"),
        "Event": ("meeting", "appointment", "calendar entry"),
        "User": ("agent", "rep", "reps", "employee", "owner", "staff member"),
        "Campaign": ("camp", "promo", "marketing initiative", "promotion"),
        "Product2": ("product", "products", "merchandise", "sku"),
        "Pricebook2": ("pricebook", "price list"),
        "Contract": ("agreement", "covenant"),
        "Order": ("purchase order", "requisition"),
        "Asset": ("equipment", "purchased item"),
        "Quote": ("proposal", "estimate", "bid"),
        "OpportunityLineItem": ("opportunity product", "line item", "deal product"),
        "Entitlement": ("sla", "support level"),
        "ContentVersion": ("file", "document", "attachment"),
        "UserRole": ("role", "job function"),
        "Group": ("queue", "public group"),
        "RecordType": ("record type",),
    }
)


def _build_synonym_index() -> Mapping[str, str]:
    index: Dict[str, str] = {}
    for api_name, synonyms in STANDARD_OBJECT_SYNONYMS.items():
        index.setdefault(api_name.lower(), api_name)
        for synonym in synonyms:
            index.setdefault(synonym.lower(), api_name)
    return MappingProxyType(index)

SYNONYM_INDEX: Mapping[str, str] = _build_synonym_index()

STATUS_KEYWORDS: Mapping[str, str] = MappingProxyType(
    {
        "open": "Open",
        "closed": "Closed",
        "new": "New",
        "active": "Active",
        "inactive": "Inactive",
        "pending": "Pending",
        "in progress": "In Progress",
        "completed": "Completed",
        "cancelled": "Cancelled",
        "on hold": "On Hold",
        "escalated": "Escalated",
        "resolved": "Resolved",
        "won": "Closed Won",
        "lost": "Closed Lost",
    }
)

PRIORITY_KEYWORDS: Mapping[str, str] = MappingProxyType(
    {
        "high": "High",
        "medium": "Medium",
        "low": "Low",
        "critical": "Critical",
        "urgent": "Urgent",
        "highest": "Highest",
        "lowest": "Lowest",
        "normal": "Normal",
    }
)

DATE_LITERALS = frozenset(
    {
        "TODAY",
        "YESTERDAY",
        "TOMORROW",
        "LAST_WEEK",
        "THIS_WEEK",
        "NEXT_WEEK",
        "LAST_MONTH",
        "THIS_MONTH",
        "NEXT_MONTH",
        "LAST_QUARTER",
        "THIS_QUARTER",
        "NEXT_QUARTER",
        "LAST_YEAR",
        "THIS_YEAR",
        "NEXT_YEAR",
        "LAST_90_DAYS",
        "NEXT_90_DAYS",
        "LAST_N_DAYS",
        "NEXT_N_DAYS",
    }
)

DATE_NATURAL_MAP: Mapping[str, str] = MappingProxyType(
    {
        "today": "TODAY",
        "yesterday": "YESTERDAY",
        "tomorrow": "TOMORROW",
        "this week": "THIS_WEEK",
        "last week": "LAST_WEEK",
        "next week": "NEXT_WEEK",
        "this month": "THIS_MONTH",
        "last month": "LAST_MONTH",
        "next month": "NEXT_MONTH",
        "this quarter": "THIS_QUARTER",
        "last quarter": "LAST_QUARTER",
        "next quarter": "NEXT_QUARTER",
        "this year": "THIS_YEAR",
        "last year": "LAST_YEAR",
        "next year": "NEXT_YEAR",
    }
)

STOPWORDS = frozenset(
    {
        "a", "an", "the", "and", "or", "of", "in", "on", "at", "to", "for", "with",
        "from", "by", "show", "me", "get", "all", "find", "list", "that", "have",
        "what", "is", "are", "was", "were", "their", "which", "who", "my",
    }
)

CORE_FIELDS: Tuple[str, ...] = ("Id", "Name", "CreatedDate", "SystemModstamp")

AGGREGATE_FUNCTIONS = frozenset({"count", "sum", "avg", "min", "max", "count_distinct"})

# Wrappers that do not change a field's grouping signature.
TRANSPARENT_FUNCTIONS = frozenset({"tolabel", "convertcurrency", "format"})

SOQL_KEYWORDS = frozenset(
    {
        "SELECT", "FROM", "WHERE", "AND", "OR", "NOT", "IN", "LIKE",
        "NULL", "TRUE", "FALSE", "ORDER", "BY", "ASC", "DESC", "LIMIT",
        "OFFSET", "GROUP", "HAVING", "AS", "NULLS", "FIRST", "LAST",
        "COUNT", "SUM", "AVG", "MIN", "MAX", "COUNT_DISTINCT",
        "CALENDAR_MONTH", "CALENDAR_QUARTER", "CALENDAR_YEAR",
        "DAY_IN_MONTH", "DAY_IN_WEEK", "DAY_IN_YEAR", "DAY_ONLY",
        "FISCAL_MONTH", "FISCAL_QUARTER", "FISCAL_YEAR",
        "HOUR_IN_DAY", "WEEK_IN_MONTH", "WEEK_IN_YEAR",
        "INCLUDES", "EXCLUDES", "TYPEOF", "WHEN", "THEN", "ELSE", "END",
        "WITH", "DATA", "CATEGORY", "ABOVE", "BELOW", "AT",
        "ROLLUP", "CUBE", "FOR", "VIEW", "REFERENCE", "UPDATE", "TRACKING", "VIEWSTAT",
        "USING", "SCOPE", "EVERYTHING", "DELEGATED", "MINE", "MY_TEAM_TERRITORY", "MY_TERRITORY", "TEAM",
        "FORMAT", "TOLABEL", "CONVERTCURRENCY", "CONVERTTZ", "DISTANCE", "GEOLOCATION",
    }
)

TOOLING_API_OBJECTS = frozenset(
    {
        "EntityDefinition",
        "FieldDefinition",
        "EntityParticle",
        "Publisher",
        "RelationshipInfo",
        "SearchLayout",
        "StandardAction",
        "UserEntityAccess",
        "UserFieldAccess",
    }
)

# Lookup id field -> relationship name, for "OwnerId LIKE 'Jane'" style mistakes.
ID_FIELD_RELATIONSHIPS: Mapping[str, str] = MappingProxyType(
    {
        "ownerid": "Owner",
        "contactid": "Contact",
        "accountid": "Account",
        "createdbyid": "CreatedBy",
        "lastmodifiedbyid": "LastModifiedBy",
        "userid": "User",
        "parentid": "Parent",
        "whatid": "What",
        "whoid": "Who",
    }
)

# Junction object -> (parent it filters, lookup field on the junction pointing at that parent).
KNOWN_JUNCTIONS: Mapping[str, Tuple[str, ...]] = _freeze(
    {
        "OpportunityTeamMember": ("Opportunity", "OpportunityId"),
        "OpportunityContactRole": ("Opportunity", "OpportunityId"),
        "AccountTeamMember": ("Account", "AccountId"),
        "CaseTeamMember": ("Case", "ParentId"),
        "AccountContactRelation": ("Account", "AccountId"),
    }
)

# Phrases that imply a junction table must be part of the plan.
JUNCTION_PHRASES: Tuple[Tuple[str, str], ...] = (
    (r"\b(working on|collaborat\w*|assigned to|involved in|team member|opportunity team|deal team)\b", "OpportunityTeamMember"),
    (r"\b(contact roles?|contacts? on (?:the )?deals?)\b", "OpportunityContactRole"),
    (r"\baccount team\b", "AccountTeamMember"),
    (r"\b(case team|working the case)\b", "CaseTeamMember"),
)

CATEGORY_CONFIDENCE_MODIFIERS: Mapping[str, float] = MappingProxyType(
    {
        "business_core": 1.0,
        "business_extended": 0.9,
        "system": 0.3,
        "system_derived": 0.3,
        "managed_package": 0.7,
        "custom_metadata": 0.4,
        "platform_event": 0.2,
        "external_object": 0.6,
        "big_object": 0.6,
    }
)
DEFAULT_CATEGORY_MODIFIER = 0.8

# Extra columns requested per object in instance searches.
SOSL_OBJECT_FIELDS: Mapping[str, Tuple[str, ...]] = _freeze(
    {
        "Account": ("Industry", "Type"),
        "Contact": ("Email", "Title"),
        "Lead": ("Company", "Status"),
        "Opportunity": ("StageName", "Amount"),
        "Case": ("Subject", "Status"),
        "User": ("Email", "IsActive"),
    }
)
SOSL_TARGET_OBJECTS: Tuple[str, ...] = ("Account", "Contact", "Lead", "Opportunity")


__all__ = [
    "STANDARD_OBJECT_SYNONYMS",
    "SYNONYM_INDEX",
    "STATUS_KEYWORDS",
    "PRIORITY_KEYWORDS",
    "DATE_LITERALS",
    "DATE_NATURAL_MAP",
    "STOPWORDS",
    "CORE_FIELDS",
    "AGGREGATE_FUNCTIONS",
    "TRANSPARENT_FUNCTIONS",
    "SOQL_KEYWORDS",
    "TOOLING_API_OBJECTS",
    "ID_FIELD_RELATIONSHIPS",
    "KNOWN_JUNCTIONS",
    "JUNCTION_PHRASES",
    "CATEGORY_CONFIDENCE_MODIFIERS",
    "DEFAULT_CATEGORY_MODIFIER",
    "SOSL_OBJECT_FIELDS",
    "SOSL_TARGET_OBJECTS",
]
