"""
Tests for company registry verification

Registry HTTP calls are mocked; red-flag rules run against fixed dates.
"""

import pytest
from datetime import date
from pathlib import Path
from unittest.mock import MagicMock

import requests

import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from company_checks import (
    CompaniesHouseRegistry, CompanyProfile, CompanyRegistryError, CompanyVerifier,
    InMemoryCompanyRegistry, _months_before,
)

TODAY = date(2026, 10, 19)
OFFICER = {'name': 'SMITH, Jane', 'officer_role': 'director'}


def json_response(data, status_code: int = 200) -> MagicMock:
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = data
    if status_code >= 400:
        response.raise_for_status.side_effect = requests.HTTPError(f"{status_code} error", response=response)
    else:
        response.raise_for_status.return_value = None
    return response


class TestCompanyVerifier:
    """Red-flag rules"""

    def test_company_not_found(self):
        verification = CompanyVerifier(InMemoryCompanyRegistry()).verify("00000000", today=TODAY)

        assert verification.found is False
        assert verification.red_flags == ["Company not found"]
        assert verification.to_dict()['verified'] is False
        assert verification.to_dict()['company'] is None

    def test_clean_company(self):
        registry = InMemoryCompanyRegistry([
            CompanyProfile("01234567", "ACME WIDGETS LTD", date_of_creation=date(2010, 3, 1), officers=[OFFICER]),
        ])

        verification = CompanyVerifier(registry).verify("01234567", today=TODAY)

        assert verification.found is True
        assert verification.has_red_flags is False
        assert verification.company.company_name == "ACME WIDGETS LTD"
        data = verification.to_dict()
        assert data['verified'] is True
        assert data['company']['date_of_creation'] == "2010-03-01"

    def test_all_red_flags(self):
        registry = InMemoryCompanyRegistry([
            CompanyProfile("sc123456", "SHELL HOLDINGS LTD", company_status="dissolved",
                           date_of_creation=date(2026, 8, 1), has_insolvency_history=True, has_charges=True),
        ])

        verification = CompanyVerifier(registry).verify("SC123456", today=TODAY)

        assert verification.red_flags == [
            "Company status: dissolved",
            "Has insolvency history",
            "Has charges/mortgages registered",
            "Newly incorporated (less than 6 months old)",
            "No officers registered",
        ]

    def test_six_month_boundary(self):
        registry = InMemoryCompanyRegistry()
        registry.add(CompanyProfile("1", "EXACTLY SIX", date_of_creation=date(2026, 4, 19), officers=[OFFICER]))
        registry.add(CompanyProfile("2", "JUST UNDER", date_of_creation=date(2026, 4, 20), officers=[OFFICER]))
        verifier = CompanyVerifier(registry)

        assert verifier.verify("1", today=TODAY).red_flags == []
        assert verifier.verify("2", today=TODAY).red_flags == ["Newly incorporated (less than 6 months old)"]

    def test_months_before(self):
        assert _months_before(date(2026, 10, 19), 6) == date(2026, 4, 19)
        assert _months_before(date(2026, 8, 31), 6) == date(2026, 2, 28)
        assert _months_before(date(2026, 3, 15), 6) == date(2025, 9, 15)


class TestCompaniesHouseRegistry:
    """HTTP client for the Companies House API"""

    def test_get_company(self):
        session = MagicMock()
        responses = {
            "https://api.example.org/company/01234567": json_response({
                'company_number': '01234567',
                'company_name': 'ACME WIDGETS LTD',
                'company_status': 'active',
                'type': 'ltd',
                'date_of_creation': '2010-03-01',
                'registered_office_address': {'locality': 'London', 'postal_code': 'EC1A 1BB'},
                'sic_codes': ['62012'],
                'has_charges': True,
            }),
            "https://api.example.org/company/01234567/officers": json_response({
                'items': [{'name': 'SMITH, Jane', 'officer_role': 'director', 'appointed_on': '2010-03-01'}],
            }),
        }
        session.get.side_effect = lambda url, timeout: responses[url]
        registry = CompaniesHouseRegistry("key", base_url="https://api.example.org/", session=session)

        company = registry.get_company(" 01234567 ")

        assert session.auth == ("key", "")
        assert company.company_name == "ACME WIDGETS LTD"
        assert company.date_of_creation == date(2010, 3, 1)
        assert company.has_charges is True
        assert company.has_insolvency_history is False
        assert company.registered_office_address['locality'] == "London"
        assert company.officers[0]['officer_role'] == "director"

    def test_company_not_found(self):
        session = MagicMock()
        session.get.return_value = json_response({}, status_code=404)
        registry = CompaniesHouseRegistry("key", session=session)

        assert registry.get_company("99999999") is None

    def test_server_error(self):
        session = MagicMock()
        session.get.return_value = json_response({}, status_code=500)
        registry = CompaniesHouseRegistry("key", session=session)

        with pytest.raises(CompanyRegistryError) as exc_info:
            registry.get_company("01234567")
        assert exc_info.value.code == "COMPANY_REGISTRY_ERROR"

    def test_non_json_response(self):
        response = json_response(None)
        response.json.side_effect = ValueError("Expecting value: line 1 column 1 (char 0)")
        session = MagicMock()
        session.get.return_value = response
        registry = CompaniesHouseRegistry("key", session=session)

        with pytest.raises(CompanyRegistryError) as exc_info:
            registry.get_company("01234567")
        assert "invalid JSON" in exc_info.value.message

    def test_connection_error(self):
        session = MagicMock()
        session.get.side_effect = requests.ConnectionError("down")
        registry = CompaniesHouseRegistry("key", retry_attempts=1, session=session)

        with pytest.raises(CompanyRegistryError):
            CompanyVerifier(registry).verify("01234567")

    def test_from_env(self, monkeypatch):
        monkeypatch.delenv("COMPANIES_HOUSE_API_KEY", raising=False)
        assert CompaniesHouseRegistry.from_env() is None

        monkeypatch.setenv("COMPANIES_HOUSE_API_KEY", "secret")
        assert isinstance(CompaniesHouseRegistry.from_env(), CompaniesHouseRegistry)
