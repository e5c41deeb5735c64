from __future__ import annotations

from typing import Any

from app.crm.models import Account, Contact, ContactOpportunity, Opportunity
from app.records.metadata import Metadata
from app.records.models import Attachment, EntityTeam, Team, User, UserTeam


def _teams_link(entity_type: str) -> dict[str, Any]:
    return {
        "type": "hasMany",
        "entity": "Team",
        "relation_name": "EntityTeam",
        "mid_keys": ["entity_id", "team_id"],
        "conditions": {"entity_type": entity_type},
    }


def _system_fields() -> dict[str, dict[str, Any]]:
    return {
        "created_at": {"type": "datetime", "read_only": True},
        "modified_at": {"type": "datetime", "read_only": True},
        "created_by": {"type": "link", "read_only": True},
        "modified_by": {"type": "link", "read_only": True},
    }


def _system_links() -> dict[str, dict[str, Any]]:
    return {
        "created_by": {"type": "belongsTo", "entity": "User"},
        "modified_by": {"type": "belongsTo", "entity": "User"},
    }


ENTITY_DEFS: dict[str, dict[str, Any]] = {
    "Account": {
        "fields": {
            "name": {"type": "varchar", "required": True, "max_length": 249},
            "website": {"type": "url", "max_length": 255},
            "email_address": {"type": "email"},
            "phone_number": {"type": "phone", "max_length": 64},
            "type": {"type": "enum", "options": ["", "Customer", "Investor", "Partner", "Reseller"]},
            "industry": {
                "type": "enum",
                "options": ["", "Finance", "Healthcare", "Manufacturing", "Retail", "Technology", "Other"],
            },
            "description": {"type": "text"},
            "billing_address_city": {"type": "varchar", "max_length": 100},
            "billing_address_country": {"type": "varchar", "max_length": 100},
            "assigned_user": {"type": "link"},
            "teams": {"type": "linkMultiple"},
            "logo": {"type": "image"},
            **_system_fields(),
        },
        "links": {
            "assigned_user": {"type": "belongsTo", "entity": "User"},
            "teams": _teams_link("Account"),
            "contacts": {"type": "hasMany", "entity": "Contact", "foreign": "account"},
            "opportunities": {"type": "hasMany", "entity": "Opportunity", "foreign": "account"},
            "logo": {"type": "belongsTo", "entity": "Attachment"},
            **_system_links(),
        },
        "collection": {
            "order_by": "created_at",
            "order": "desc",
            "text_filter_fields": ["name", "email_address"],
            "primary_filters": {
                "customers": [{"type": "equals", "attribute": "type", "value": "Customer"}],
                "partners": [{"type": "equals", "attribute": "type", "value": "Partner"}],
            },
        },
    },
    "Contact": {
        "fields": {
            "salutation_name": {"type": "enum", "options": ["", "Mr.", "Ms.", "Mrs.", "Dr."]},
            "first_name": {"type": "varchar", "max_length": 100},
            "last_name": {"type": "varchar", "required": True, "max_length": 100},
            "name": {"type": "varchar", "read_only": True},
            "title": {"type": "varchar", "max_length": 100},
            "email_address": {"type": "email"},
            "phone_number": {"type": "phone", "max_length": 64},
            "description": {"type": "text"},
            "do_not_call": {"type": "bool"},
            "account": {"type": "link"},
            "opportunities": {"type": "linkMultiple"},
            "assigned_user": {"type": "link"},
            "teams": {"type": "linkMultiple"},
            **_system_fields(),
        },
        "links": {
            "account": {"type": "belongsTo", "entity": "Account", "foreign": "contacts"},
            "opportunities": {
                "type": "hasMany",
                "entity": "Opportunity",
                "foreign": "contacts",
                "relation_name": "ContactOpportunity",
                "mid_keys": ["contact_id", "opportunity_id"],
            },
            "assigned_user": {"type": "belongsTo", "entity": "User"},
            "teams": _teams_link("Contact"),
            **_system_links(),
        },
        "collection": {
            "order_by": "created_at",
            "order": "desc",
            "text_filter_fields": ["name", "first_name", "last_name", "email_address"],
        },
    },
    "Opportunity": {
        "fields": {
            "name": {"type": "varchar", "required": True, "max_length": 249},
            "stage": {
                "type": "enum",
                "options": ["Prospecting", "Qualification", "Proposal", "Negotiation", "Closed Won", "Closed Lost"],
                "default": "Prospecting",
            },
            "probability": {"type": "int", "min": 0, "max": 100},
            "amount": {"type": "currency", "min": 0},
            "close_date": {"type": "date", "required": True},
            "lead_source": {"type": "enum", "options": ["", "Call", "Email", "Existing Customer", "Partner", "Web Site"]},
            "description": {"type": "text"},
            "account": {"type": "link"},
            "contacts": {"type": "linkMultiple"},
            "assigned_user": {"type": "link"},
            "teams": {"type": "linkMultiple"},
            **_system_fields(),
        },
        "links": {
            "account": {"type": "belongsTo", "entity": "Account", "foreign": "opportunities"},
            "contacts": {
                "type": "hasMany",
                "entity": "Contact",
                "foreign": "opportunities",
                "relation_name": "ContactOpportunity",
                "mid_keys": ["opportunity_id", "contact_id"],
            },
            "assigned_user": {"type": "belongsTo", "entity": "User"},
            "teams": _teams_link("Opportunity"),
            **_system_links(),
        },
        "collection": {
            "order_by": "created_at",
            "order": "desc",
            "text_filter_fields": ["name"],
            "primary_filters": {
                "open": [{"type": "notIn", "attribute": "stage", "value": ["Closed Won", "Closed Lost"]}],
                "won": [{"type": "equals", "attribute": "stage", "value": "Closed Won"}],
            },
        },
    },
    "User": {
        "fields": {
            "user_name": {"type": "varchar", "required": True, "max_length": 128},
            "name": {"type": "varchar", "max_length": 255},
            "type": {"type": "enum", "options": ["regular", "admin", "portal", "api", "system"], "default": "regular"},
            "is_active": {"type": "bool", "default": True},
            "email_address": {"type": "email"},
            "default_team": {"type": "link"},
            "teams": {"type": "linkMultiple"},
            **_system_fields(),
        },
        "links": {
            "default_team": {"type": "belongsTo", "entity": "Team"},
            "teams": {
                "type": "hasMany",
                "entity": "Team",
                "foreign": "users",
                "relation_name": "UserTeam",
                "mid_keys": ["user_id", "team_id"],
            },
            **_system_links(),
        },
        "collection": {"order_by": "user_name", "order": "asc", "text_filter_fields": ["user_name", "name"]},
    },
    "Team": {
        "fields": {
            "name": {"type": "varchar", "required": True, "max_length": 100},
            "description": {"type": "text"},
            **_system_fields(),
        },
        "links": {
            "users": {
                "type": "hasMany",
                "entity": "User",
                "foreign": "teams",
                "relation_name": "UserTeam",
                "mid_keys": ["team_id", "user_id"],
            },
            **_system_links(),
        },
        "collection": {"order_by": "name", "order": "asc", "text_filter_fields": ["name"]},
    },
    "Attachment": {
        "fields": {
            "name": {"type": "varchar"},
            "type": {"type": "varchar"},
            "size": {"type": "int"},
            "field": {"type": "varchar"},
            "parent_type": {"type": "varchar"},
            "parent_id": {"type": "varchar"},
            "created_at": {"type": "datetime", "read_only": True},
        },
        "links": {},
        "collection": {"order_by": "created_at", "order": "desc"},
    },
}

SCOPES: dict[str, dict[str, Any]] = {
    "Account": {"entity": True, "api": True, "acl": True, "stream": True},
    "Contact": {"entity": True, "api": True, "acl": True, "stream": True},
    "Opportunity": {"entity": True, "api": True, "acl": True, "stream": True},
    "User": {"entity": True, "api": True, "acl": True, "stream": False},
    "Team": {"entity": True, "api": True, "acl": True, "stream": False},
    "Attachment": {"entity": True, "api": False, "acl": False, "stream": False},
}

INTEGRATIONS: dict[str, dict[str, Any]] = {
    "Google": {
        "auth_method": "oauth2",
        "client_class_name": "app.integrations.clients.GoogleClient",
        "params": {
            "endpoint": "https://accounts.google.com/o/oauth2/v2/auth",
            "token_endpoint": "https://oauth2.googleapis.com/token",
            "api_url": "https://www.googleapis.com",
            "scope": "https://www.googleapis.com/auth/calendar",
            "redirect_uri_path": "oauth-callback",
        },
    },
    "Mailchimp": {
        "auth_method": "api_key",
        "client_class_name": "app.integrations.clients.ApiKeyClient",
        "params": {"api_url": "https://us1.api.mailchimp.com/3.0"},
    },
}

MODELS = {
    "Account": Account,
    "Contact": Contact,
    "Opportunity": Opportunity,
    "User": User,
    "Team": Team,
    "Attachment": Attachment,
    "EntityTeam": EntityTeam,
    "UserTeam": UserTeam,
    "ContactOpportunity": ContactOpportunity,
}


def build_metadata() -> Metadata:
    return Metadata(entity_defs=ENTITY_DEFS, scopes=SCOPES, models=MODELS, integrations=INTEGRATIONS)
