"""SiteInsight: Tenant, Credential & Status Models.

Sites and OAuth credentials are created outside this core (onboarding and
the OAuth grant flow); the pipeline reads them and mutates credentials only
on refresh.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel, UniqueConstraint


class Provider(str, Enum):
    """External analytics data sources."""

    GA4 = "ga4"
    GSC = "gsc"


class IngestionState(str, Enum):
    SUCCESS = "success"
    ERROR = "error"


class Site(SQLModel, table=True):
    """A customer's monitored property (the tenant)."""

    __tablename__ = "sites"

    id: str = Field(primary_key=True)
    name: str = Field(default="")
    url: str = Field(default="", description="Public site URL")
    site_type: str = Field(default="", index=True, description="Corporate, EC, media...")
    business_type: str = Field(default="", description="BtoB | BtoC | ...")
    owner_id: str = Field(default="", index=True)
    ga4_property_id: Optional[str] = Field(default=None)
    ga4_credential_id: Optional[str] = Field(default=None)
    gsc_site_url: Optional[str] = Field(default=None)
    gsc_credential_id: Optional[str] = Field(default=None)
    conversion_events: List[str] = Field(
        default_factory=list,
        sa_column=Column(JSON),
        description="GA4 event names counted as conversions",
    )
    setup_completed: bool = Field(default=False)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def credential_ref(self, provider: Provider) -> Optional[str]:
        if provider == Provider.GA4:
            return self.ga4_credential_id
        return self.gsc_credential_id

    def property_ref(self, provider: Provider) -> Optional[str]:
        if provider == Provider.GA4:
            return self.ga4_property_id
        return self.gsc_site_url

    def is_linked(self, provider: Provider) -> bool:
        return bool(self.property_ref(provider) and self.credential_ref(provider))


class OAuthCredential(SQLModel, table=True):
    """OAuth token pair for one tenant + provider. Tokens are stored encrypted."""

    __tablename__ = "oauth_credentials"

    id: str = Field(primary_key=True)
    provider: str = Field(index=True, description="ga4 | gsc")
    access_token_enc: str = Field(description="Fernet ciphertext")
    refresh_token_enc: Optional[str] = Field(default=None, description="Fernet ciphertext")
    expires_at: datetime
    scope: Optional[str] = Field(default=None)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class IngestionStatus(SQLModel, table=True):
    """Last-run outcome per tenant per provider, read by the dashboard."""

    __tablename__ = "ingestion_status"
    __table_args__ = (
        UniqueConstraint("site_id", "provider", name="uq_ingestion_status"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    site_id: str = Field(index=True)
    provider: str = Field(index=True)
    last_fetched_at: Optional[datetime] = Field(default=None)
    last_attempted_at: Optional[datetime] = Field(
        default=None, description="Set on every run, failed ones included"
    )
    status: str = Field(default=IngestionState.SUCCESS.value)
    error_message: Optional[str] = Field(default=None)


class UserAccount(SQLModel, table=True):
    """Site owner with monthly AI-generation usage counters."""

    __tablename__ = "user_accounts"

    id: str = Field(primary_key=True)
    plan: str = Field(default="free")
    ai_summary_usage: int = Field(default=0)
    ai_improvement_usage: int = Field(default=0)
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
