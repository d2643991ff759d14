"""Pydantic schemas for provider usage reporting."""

from datetime import date

from pydantic import BaseModel, ConfigDict


class ProviderUsageDayResponse(BaseModel):
    usage_date: date
    sync_jobs: int
    failed_jobs: int
    api_calls: int
    accounts_synced: int
    transactions_synced: int

    model_config = ConfigDict(from_attributes=True)


class ProviderUsageResponse(BaseModel):
    """Provider usage over a reporting period, most recent day first."""

    provider_name: str
    sync_jobs: int
    failed_jobs: int
    api_calls: int
    accounts_synced: int
    transactions_synced: int
    days: list[ProviderUsageDayResponse] = []

    model_config = ConfigDict(from_attributes=True)
