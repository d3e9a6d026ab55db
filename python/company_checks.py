"""
Company verification

Looks a company up in a company registry and raises red flags for a
screening reviewer. Verification results are attached to screening metadata
(``company_verification``); they never change the risk score.

Registries:
- InMemoryCompanyRegistry: fixed profiles (tests, offline use)
- CompaniesHouseRegistry: UK Companies House public data API
"""

import calendar
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, asdict
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional

import requests

from aml_errors import AMLError
from aml_models import parse_iso_date
from list_providers import http_get

logger = logging.getLogger(__name__)

COMPANIES_HOUSE_URL = "https://api.company-information.service.gov.uk"
NEW_COMPANY_MONTHS = 6


class CompanyRegistryError(AMLError):
    """The company registry could not be queried"""
    code = "COMPANY_REGISTRY_ERROR"


@dataclass
class CompanyProfile:
    """Registry record of a company"""
    company_number: str
    company_name: str
    company_status: str = "active"
    company_type: Optional[str] = None
    date_of_creation: Optional[date] = None
    registered_office_address: Dict[str, str] = field(default_factory=dict)
    sic_codes: List[str] = field(default_factory=list)
    has_insolvency_history: bool = False
    has_charges: bool = False
    officers: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['date_of_creation'] = self.date_of_creation.isoformat() if self.date_of_creation else None
        return data


@dataclass
class CompanyVerification:
    company_number: str
    found: bool
    red_flags: List[str] = field(default_factory=list)
    company: Optional[CompanyProfile] = None
    checked_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def has_red_flags(self) -> bool:
        return bool(self.red_flags)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'company_number': self.company_number,
            'verified': self.found,
            'has_red_flags': self.has_red_flags,
            'red_flags': list(self.red_flags),
            'company': self.company.to_dict() if self.company else None,
            'checked_at': self.checked_at.isoformat(),
        }


class CompanyRegistry(ABC):
    """Source of company records"""

    @abstractmethod
    def get_company(self, company_number: str) -> Optional[CompanyProfile]:
        """Return the company, or None if the registry does not know it

        Raises:
            CompanyRegistryError: If the registry cannot be queried
        """


class InMemoryCompanyRegistry(CompanyRegistry):

    def __init__(self, companies: Optional[List[CompanyProfile]] = None):
        self._companies = {c.company_number.upper(): c for c in companies or []}

    def add(self, company: CompanyProfile) -> None:
        self._companies[company.company_number.upper()] = company

    def get_company(self, company_number: str) -> Optional[CompanyProfile]:
        return self._companies.get(company_number.strip().upper())


class CompaniesHouseRegistry(CompanyRegistry):
    """UK Companies House API (HTTP basic auth with the API key as user name)"""

    def __init__(self, api_key: str, base_url: str = COMPANIES_HOUSE_URL, timeout: int = 30,
                 retry_attempts: int = 3, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.retry_attempts = retry_attempts
        self.session = session or requests.Session()
        self.session.auth = (api_key, '')

    @classmethod
    def from_env(cls, env_var: str = "COMPANIES_HOUSE_API_KEY") -> Optional['CompaniesHouseRegistry']:
        api_key = os.getenv(env_var)
        if not api_key:
            logger.warning(f"Companies House API key not configured ({env_var}); company checks disabled")
            return None
        return cls(api_key)

    def _get_json(self, path: str) -> Optional[Dict[str, Any]]:
        url = f"{self.base_url}{path}"
        try:
            response = http_get(url, self.timeout, self.retry_attempts, self.session)
        except requests.HTTPError as e:
            if e.response is not None and e.response.status_code == 404:
                return None
            raise CompanyRegistryError(f"Companies House API error: {e}") from e
        except requests.RequestException as e:
            raise CompanyRegistryError(f"Companies House request failed: {e}") from e
        try:
            return response.json()
        except ValueError as e:
            raise CompanyRegistryError(f"Companies House returned invalid JSON for {path}") from e

    def get_company(self, company_number: str) -> Optional[CompanyProfile]:
        number = company_number.strip().upper()
        company = self._get_json(f"/company/{number}")
        if company is None:
            return None
        officers = self._get_json(f"/company/{number}/officers") or {}

        address = company.get('registered_office_address') or {}
        return CompanyProfile(
            company_number=company.get('company_number', number),
            company_name=company.get('company_name', ''),
            company_status=company.get('company_status', 'unknown'),
            company_type=company.get('type'),
            date_of_creation=parse_iso_date(company.get('date_of_creation')),
            registered_office_address={k: v for k, v in address.items() if isinstance(v, str)},
            sic_codes=list(company.get('sic_codes') or []),
            has_insolvency_history=bool(company.get('has_insolvency_history')),
            has_charges=bool(company.get('has_charges')),
            officers=[
                {
                    'name': o.get('name'),
                    'officer_role': o.get('officer_role'),
                    'appointed_on': o.get('appointed_on'),
                    'resigned_on': o.get('resigned_on'),
                    'nationality': o.get('nationality'),
                }
                for o in officers.get('items') or []
            ],
        )


def _months_before(day: date, months: int) -> date:
    month_index = day.year * 12 + day.month - 1 - months
    year, month = divmod(month_index, 12)
    month += 1
    return date(year, month, min(day.day, calendar.monthrange(year, month)[1]))


class CompanyVerifier:
    """Derives red flags from a registry record"""

    def __init__(self, registry: CompanyRegistry):
        self.registry = registry

    def verify(self, company_number: str, today: Optional[date] = None) -> CompanyVerification:
        """Verify a company and collect red flags

        Raises:
            CompanyRegistryError: If the registry cannot be queried
        """
        today = today or date.today()
        company = self.registry.get_company(company_number)
        if company is None:
            logger.warning(f"⚠ Company {company_number} not found in registry")
            return CompanyVerification(company_number=company_number, found=False,
                                       red_flags=["Company not found"])

        flags = []
        if company.company_status.lower() != "active":
            flags.append(f"Company status: {company.company_status}")
        if company.has_insolvency_history:
            flags.append("Has insolvency history")
        if company.has_charges:
            flags.append("Has charges/mortgages registered")
        if company.date_of_creation and company.date_of_creation > _months_before(today, NEW_COMPANY_MONTHS):
            flags.append(f"Newly incorporated (less than {NEW_COMPANY_MONTHS} months old)")
        if not company.officers:
            flags.append("No officers registered")

        if flags:
            logger.info(f"Company {company_number}: {len(flags)} red flag(s)")
        return CompanyVerification(company_number=company_number, found=True,
                                   red_flags=flags, company=company)
