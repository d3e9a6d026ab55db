"""
Unit tests for the AML Screening Engine
Tests configuration, name matching, list search, risk aggregation,
request validation and end-to-end screenings against the sample lists
"""

import csv
import json
import pytest
from concurrent.futures import ThreadPoolExecutor
from datetime import date, timedelta
from pathlib import Path
from typing import Dict, List
from unittest.mock import patch

import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from aml_errors import InternalMatchingError, ListUnavailableError, ScreeningTimeout, ValidationError
from aml_models import (
    MatchType, RiskLevel, ScreeningMatch, ScreeningRequest, ScreeningStatus, SubjectType,
    WatchlistEntity, ENTITY_ORGANISATION,
)
from company_checks import CompanyProfile
from config_manager import ConfigManager, ConfigurationError
from list_providers import ListProvider, SampleListProvider
from list_search import SearchOptions, search
from list_store import ListStore
from metrics import get_operation_stats
from name_matcher import (
    GENERAL_PROFILE, SANCTIONS_PROFILE, MatcherProfile, best_similarity, normalize_name,
    round_half_up, similarity,
)
from risk_aggregator import RiskAggregator, aggregate
from screener import (
    ScreeningEngine, SimulatedVendorGateway, main, parse_subject_type, request_from_fields,
    validate_screening_request,
)

PUTIN_DOB = date(1952, 10, 7)


class FailingProvider(ListProvider):
    """Provider whose only list can never be fetched"""

    def __init__(self, list_id: str, match_type: MatchType):
        self.list_id = list_id
        self.match_type = match_type

    def sources(self) -> Dict[str, MatchType]:
        return {self.list_id: self.match_type}

    def fetch_source_list(self, list_id: str) -> List[WatchlistEntity]:
        raise ListUnavailableError(list_id, f"{list_id} feed is down")


@pytest.fixture(scope="module")
def config():
    return ConfigManager()


@pytest.fixture(scope="module")
def sample_store():
    store = ListStore([SampleListProvider()])
    store.init()
    return store


@pytest.fixture(scope="module")
def engine(sample_store, config):
    return ScreeningEngine(sample_store, vendor=SimulatedVendorGateway(0), config=config)


def make_match(match_type: MatchType, score: int, entity_id: str = "E-1") -> ScreeningMatch:
    return ScreeningMatch(match_type=match_type, entity_id=entity_id, entity_name="Test Entity",
                          match_score=score)


class TestConfigManager:
    """Tests for configuration management"""

    def test_default_config_values(self, tmp_path):
        """Missing config file falls back to defaults"""
        config = ConfigManager(str(tmp_path / "missing.yaml"))

        assert config.matching.floor == 70
        assert config.matching.dob_boost == 15
        assert config.matching.profiles['sanctions'].containment_score == 90
        assert config.matching.profiles['general'].partial_token_max == 75
        assert config.matching.corpus_profiles['SANCTIONS'] == 'sanctions'
        assert config.risk.weights['SANCTIONS'] == 1.5
        assert config.risk.mean_weight + config.risk.max_weight == pytest.approx(1.0)
        assert config.input_validation.strict_identity_fields is False

    def test_bundled_config_matches_defaults(self, config):
        assert config.matching.floor == 70
        assert config.risk.critical_sanctions_score == 85
        assert config.review.annual_review_days == 365
        assert config.data.use_sample_data is True
        assert config.data.refresh_check_minutes == 15

    def test_config_loads_from_yaml(self, tmp_path):
        """Test loading configuration from YAML file"""
        config_file = tmp_path / "config.yaml"
        config_file.write_text("""
matching:
  floor: 80
  profiles:
    general:
      partial_token_max: 70
risk:
  weights:
    pep: 2.0
data:
  staleness_hours: 6
  feeds:
    - list_id: "UK PEP Feed"
      match_type: pep
      url: "https://example.org/pep.json"
screening:
  vendor_latency_seconds: 0
""")
        config = ConfigManager(str(config_file))

        assert config.matching.floor == 80
        assert config.matching.profiles['general'].partial_token_max == 70
        # Unspecified profile values keep their defaults
        assert config.matching.profiles['general'].containment_score == 85
        assert config.risk.weights['PEP'] == 2.0
        assert config.risk.weights['SANCTIONS'] == 1.5
        assert config.data.staleness_hours == 6
        assert config.data.feeds[0].match_type == 'PEP'
        assert config.screening.vendor_latency_seconds == 0

    @pytest.mark.parametrize("content", [
        "matching:\n  floor: 150\n",
        "matching:\n  profiles:\n    sanctions:\n      partial_token_credit: 1.5\n",
        "matching:\n  corpus_profiles:\n    PEP: strict\n",
        "risk:\n  weights:\n    PEP: 0\n",
        "risk:\n  mean_weight: 0.5\n  max_weight: 0.6\n",
        "risk:\n  medium_score: 80\n  high_score: 70\n",
        "data:\n  staleness_hours: 0\n",
        "data:\n  refresh_check_minutes: -5\n",
        "input_validation:\n  name_min_length: 0\n",
        "data:\n  feeds:\n    - list_id: x\n",
    ])
    def test_invalid_config_rejected(self, tmp_path, content):
        config_file = tmp_path / "config.yaml"
        config_file.write_text(content)

        with pytest.raises(ConfigurationError):
            ConfigManager(str(config_file))

    def test_invalid_yaml(self, tmp_path):
        config_file = tmp_path / "config.yaml"
        config_file.write_text("matching: [unclosed\n")

        with pytest.raises(ConfigurationError):
            ConfigManager(str(config_file))

    def test_database_url_env_override(self, tmp_path, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "postgresql://aml@localhost/aml")
        config = ConfigManager(str(tmp_path / "missing.yaml"))
        assert config.database.url == "postgresql://aml@localhost/aml"

    def test_config_to_dict(self, config):
        config_dict = config.to_dict()
        for section in ('matching', 'risk', 'data', 'screening', 'review'):
            assert section in config_dict


class TestNameMatcher:
    """Tests for the 0-100 name similarity heuristic"""

    def test_normalize(self):
        assert normalize_name("  Vladimir   PUTIN ") == "vladimir putin"
        assert normalize_name("") == ""
        assert normalize_name(None) == ""

    def test_exact_match_after_normalization(self):
        assert similarity("JOHN   smith", " john Smith ") == 100

    def test_empty_side_scores_zero(self):
        assert similarity("", "John Smith") == 0
        assert similarity("John Smith", "   ") == 0

    def test_containment_is_symmetric(self):
        assert similarity("Putin", "Vladimir Putin", SANCTIONS_PROFILE) == 90
        assert similarity("Vladimir Putin", "Putin", SANCTIONS_PROFILE) == 90
        assert similarity("Putin", "Vladimir Putin", GENERAL_PROFILE) == 85

    def test_containment_respects_token_boundaries(self):
        # "put" is a substring of "putin" but not a whole token; too short for partial credit
        assert similarity("Put", "Putin") == 0

    def test_token_overlap(self):
        # Reordered tokens: both match exactly
        assert similarity("Vladimir Putin", "Putin Vladimir", SANCTIONS_PROFILE) == 85
        assert similarity("Vladimir Putin", "Putin Vladimir", GENERAL_PROFILE) == 75

    def test_partial_token_credit(self):
        # john = 1.0, smith inside smithson = 0.7 -> 0.85 of the profile maximum
        assert similarity("John Smith", "John Smithson", GENERAL_PROFILE) == 64
        assert similarity("John Smith", "John Smithson", SANCTIONS_PROFILE) == 72

    def test_punctuated_tokens(self):
        assert similarity("Vladimir Putin", "PUTIN, Vladimir Vladimirovich", SANCTIONS_PROFILE) == 48
        assert similarity("Vladimir Putin", "PUTIN, Vladimir", SANCTIONS_PROFILE) == 72

    def test_short_tokens_get_no_partial_credit(self):
        profile = MatcherProfile(containment_score=90, partial_token_max=100)
        assert similarity("Al Bo", "Ali Bob", profile) == 0

    def test_score_always_in_range(self):
        for query, candidate in [("a", "b"), ("John", "John"), ("x y z", "x")]:
            assert 0 <= similarity(query, candidate) <= 100

    def test_best_similarity_over_aliases(self):
        score, name = best_similarity(
            "Vladimir Putin",
            ["PUTIN, Vladimir Vladimirovich", "PUTIN, Vladimir", "Putin Vladimir"],
            SANCTIONS_PROFILE
        )
        assert score == 85
        assert name == "Putin Vladimir"

    def test_best_similarity_tie_keeps_first(self):
        score, name = best_similarity("John Smith", ["Smith John", "John Smith Jr", "Dr John Smith"])
        assert score == 85
        assert name == "John Smith Jr"

    def test_round_half_up(self):
        assert round_half_up(2.5) == 3
        assert round_half_up(0.5) == 1
        assert round_half_up(72.25) == 72
        assert round_half_up(88.8) == 89


class TestListSearch:
    """Tests for corpus search, floor and boosts"""

    @staticmethod
    def entity(entity_id: str, name: str, **kwargs) -> WatchlistEntity:
        return WatchlistEntity(id=entity_id, name=name, source_lists=("Test List",), **kwargs)

    def test_floor_applies_before_boosts(self):
        dob = date(1980, 1, 1)
        corpus = [self.entity("T-1", "John Smithson", date_of_birth=dob, nationalities=("UK",))]
        options = SearchOptions(date_of_birth=dob, nationality="UK", subject_type=SubjectType.INDIVIDUAL)

        # Base 64 is below the floor; boosts must not lift it over
        assert search("John Smith", options, corpus, profile=GENERAL_PROFILE) == []

    def test_boosts_applied_and_capped(self):
        dob = date(1980, 1, 1)
        corpus = [self.entity("T-1", "John Smithson", date_of_birth=dob, nationalities=("United Kingdom",))]
        options = SearchOptions(date_of_birth=dob, nationality=" united kingdom ",
                                subject_type=SubjectType.INDIVIDUAL)

        matches = search("John Smith", options, corpus, match_type=MatchType.SANCTIONS,
                         profile=SANCTIONS_PROFILE)

        assert len(matches) == 1
        match = matches[0]
        assert match.metadata['base_score'] == 72
        assert match.metadata['boosts'] == {'date_of_birth': 15, 'nationality': 10, 'subject_type': 5}
        assert match.match_score == 100
        assert match.match_type == MatchType.SANCTIONS
        assert match.list_type == 'sanctions'
        assert match.list_name == 'Test List'

    def test_subject_type_boost_only_for_matching_entity_type(self):
        corpus = [self.entity("T-1", "Acme Holdings", entity_type=ENTITY_ORGANISATION)]

        company = search("Acme Holdings", SearchOptions(subject_type=SubjectType.COMPANY), corpus)
        individual = search("Acme Holdings", SearchOptions(subject_type=SubjectType.INDIVIDUAL), corpus)

        assert company[0].metadata['boosts'] == {'subject_type': 5}
        assert individual[0].metadata['boosts'] == {}
        assert individual[0].match_score == 100

    def test_ordering_by_score_then_id(self):
        corpus = [
            self.entity("B-2", "Maria Garcia"),
            self.entity("C-3", "Maria Garcia Lopez"),
            self.entity("A-1", "Maria Garcia"),
        ]

        matches = search("Maria Garcia", None, corpus)

        assert [m.entity_id for m in matches] == ["A-1", "B-2", "C-3"]
        assert [m.match_score for m in matches] == [100, 100, 85]

    def test_positions_only_on_pep_matches(self):
        corpus = [self.entity("P-1", "Robert Johnson", positions=("Minister",))]

        pep = search("Robert Johnson", None, corpus, match_type=MatchType.PEP)
        media = search("Robert Johnson", None, corpus, match_type=MatchType.ADVERSE_MEDIA)

        assert pep[0].positions == ["Minister"]
        assert media[0].positions == []

    def test_empty_corpus(self):
        assert search("John Smith", None, []) == []

    def test_scoring_failure_raises_internal_error(self):
        corpus = [self.entity("T-9", "John Smith")]
        with patch('list_search.best_similarity', side_effect=RuntimeError("boom")):
            with pytest.raises(InternalMatchingError) as exc_info:
                search("John Smith", None, corpus)
        assert exc_info.value.entity_id == "T-9"
        assert exc_info.value.code == "INTERNAL_MATCHING_ERROR"


class TestRiskAggregator:
    """Tests for weighted risk scoring and level overrides"""

    def test_no_matches_is_low(self):
        assessment = aggregate([])
        assert assessment.risk_score == 0
        assert assessment.risk_level == RiskLevel.LOW

    def test_single_pep_match(self):
        assessment = aggregate([make_match(MatchType.PEP, 50)])
        assert assessment.risk_score == 60
        assert assessment.risk_level == RiskLevel.MEDIUM

    def test_any_sanctions_match_is_at_least_high(self):
        assessment = aggregate([make_match(MatchType.SANCTIONS, 50)])
        assert assessment.risk_score == 75
        assert assessment.risk_level == RiskLevel.HIGH

    def test_strong_sanctions_match_is_critical(self):
        assessment = RiskAggregator(weights={mt: 0.5 for mt in MatchType}).aggregate(
            [make_match(MatchType.SANCTIONS, 90)]
        )
        # Score alone would be 45 (MEDIUM)
        assert assessment.risk_score == 45
        assert assessment.risk_level == RiskLevel.CRITICAL

    def test_mixed_matches_blend(self):
        assessment = aggregate([
            make_match(MatchType.PEP, 80, "P-1"),
            make_match(MatchType.ADVERSE_MEDIA, 60, "A-1"),
        ])
        # weighted 96 and 60: 0.4 * 78 + 0.6 * 96 = 88.8
        assert assessment.risk_score == 89
        assert assessment.risk_level == RiskLevel.HIGH

    def test_score_clamped_to_100(self):
        assessment = aggregate([make_match(MatchType.SANCTIONS, 100)])
        assert assessment.risk_score == 100
        assert assessment.risk_level == RiskLevel.CRITICAL

    @pytest.mark.parametrize("match_type", list(MatchType))
    @pytest.mark.parametrize("others", [
        [],
        [(MatchType.PEP, 60)],
        [(MatchType.ADVERSE_MEDIA, 40), (MatchType.WATCHLIST, 75)],
        [(MatchType.SANCTIONS, 95), (MatchType.PEP, 100)],
    ])
    def test_score_never_decreases_as_a_match_rises(self, match_type, others):
        """Raising one match score, others fixed, never lowers score or level"""
        fixed = [make_match(mt, score, f"F-{i}") for i, (mt, score) in enumerate(others)]
        levels = list(RiskLevel)
        previous_score, previous_level = -1, -1

        for score in range(0, 101):
            assessment = aggregate(fixed + [make_match(match_type, score, "V-1")])
            assert 0 <= assessment.risk_score <= 100
            assert assessment.risk_score >= previous_score
            assert levels.index(assessment.risk_level) >= previous_level
            previous_score = assessment.risk_score
            previous_level = levels.index(assessment.risk_level)

    def test_from_config(self, config):
        aggregator = RiskAggregator.from_config(config.risk)
        assert aggregator.weights[MatchType.PEP] == 1.2
        assert aggregator.thresholds.high_score == 70
        assert aggregator.max_weight == 0.6


class TestRequestValidation:
    """Tests for screening request validation"""

    @pytest.mark.parametrize("name,code", [
        ("", "NAME_REQUIRED"),
        ("   ", "NAME_REQUIRED"),
        ("A", "NAME_TOO_SHORT"),
        ("x" * 201, "NAME_TOO_LONG"),
        ("<script>alert(1)</script>", "BLOCKED_CHARACTERS"),
        ("John; DROP TABLE", "BLOCKED_CHARACTERS"),
        ("John\x00Smith", "CONTROL_CHARACTER"),
        ("John\u200bSmith", "CONTROL_CHARACTER"),
    ])
    def test_invalid_names(self, config, name, code):
        with pytest.raises(ValidationError) as exc_info:
            validate_screening_request(ScreeningRequest(subject_name=name), config)
        assert exc_info.value.code == code
        assert exc_info.value.field == "subject_name"

    def test_unicode_names_accepted(self, config):
        for name in ("José García", "Müller-Lüdenscheidt", "Владимир Путин", "O'Brien"):
            validate_screening_request(ScreeningRequest(subject_name=name), config)

    def test_missing_identity_fields_reported(self, config):
        missing = validate_screening_request(ScreeningRequest(subject_name="John Smith"), config)
        assert missing == ['date_of_birth', 'nationality']

        missing = validate_screening_request(
            ScreeningRequest(subject_name="Acme Ltd", subject_type=SubjectType.COMPANY, company_number="123"),
            config
        )
        assert missing == ['registration_country']

    def test_strict_identity_fields(self, tmp_path):
        config_file = tmp_path / "config.yaml"
        config_file.write_text("input_validation:\n  strict_identity_fields: true\n")
        strict = ConfigManager(str(config_file))

        with pytest.raises(ValidationError) as exc_info:
            validate_screening_request(ScreeningRequest(subject_name="John Smith"), strict)
        assert exc_info.value.code == "IDENTITY_FIELD_REQUIRED"
        assert exc_info.value.field == "date_of_birth"

        validate_screening_request(
            ScreeningRequest(subject_name="John Smith", date_of_birth=date(1980, 1, 1), nationality="UK"),
            strict
        )

    def test_future_date_of_birth(self, config):
        request = ScreeningRequest(subject_name="John Smith", date_of_birth=date.today() + timedelta(days=1))
        with pytest.raises(ValidationError) as exc_info:
            validate_screening_request(request, config)
        assert exc_info.value.code == "DOB_IN_FUTURE"

    def test_fields_not_applicable_to_subject_type(self, config):
        with pytest.raises(ValidationError) as exc_info:
            validate_screening_request(ScreeningRequest(subject_name="John Smith", company_number="123"), config)
        assert exc_info.value.code == "FIELD_NOT_APPLICABLE"
        assert exc_info.value.field == "company_number"

        with pytest.raises(ValidationError) as exc_info:
            validate_screening_request(
                ScreeningRequest(subject_name="Acme Ltd", subject_type=SubjectType.COMPANY,
                                 date_of_birth=date(1990, 1, 1)),
                config
            )
        assert exc_info.value.field == "date_of_birth"

    def test_invalid_email(self, config):
        with pytest.raises(ValidationError) as exc_info:
            validate_screening_request(ScreeningRequest(subject_name="John Smith", email="not-an-email"), config)
        assert exc_info.value.code == "INVALID_EMAIL"

    def test_subject_type_string_accepted_without_mutation(self, config):
        request = ScreeningRequest(subject_name="Acme Ltd", subject_type="company",
                                   company_number="01234567", registration_country="UK")

        assert validate_screening_request(request, config) == []
        assert request.subject_type == "company"
        assert parse_subject_type(" company ") == SubjectType.COMPANY

    def test_engine_normalizes_string_subject_type(self, engine):
        request = ScreeningRequest(subject_name="Acme Widgets Ltd", subject_type="company")

        result = engine.screen(request)

        assert result.metadata['subject_type'] == "COMPANY"
        assert request.subject_type == "company"

    def test_unknown_subject_type(self, config):
        with pytest.raises(ValidationError) as exc_info:
            validate_screening_request(ScreeningRequest(subject_name="Acme Ltd", subject_type="TRUST"), config)
        assert exc_info.value.code == "INVALID_SUBJECT_TYPE"

    def test_request_from_fields(self):
        request = request_from_fields("Vladimir Putin", subject_type="individual", date_of_birth="1952-10-07")
        assert request.subject_type == SubjectType.INDIVIDUAL
        assert request.date_of_birth == PUTIN_DOB

        with pytest.raises(ValidationError) as exc_info:
            request_from_fields("Vladimir Putin", date_of_birth="07/10/1952")
        assert exc_info.value.code == "INVALID_DOB_FORMAT"

    def test_validation_error_to_dict(self):
        error = ValidationError("Name too short", field="subject_name", code="NAME_TOO_SHORT",
                                suggestion="Provide a longer name")
        assert error.to_dict() == {
            'code': 'NAME_TOO_SHORT',
            'message': 'Name too short',
            'details': {'field': 'subject_name', 'suggestion': 'Provide a longer name'},
        }


class TestScreeningEngine:
    """End-to-end screenings against the built-in sample lists"""

    def test_sanctioned_individual_with_dob(self, engine):
        result = engine.screen(ScreeningRequest(subject_name="Vladimir Putin", date_of_birth=PUTIN_DOB))

        assert result.complete is True
        assert result.status == ScreeningStatus.COMPLETED
        assert result.risk_level == RiskLevel.CRITICAL
        assert result.risk_score == 100
        assert result.sanctions_match is True
        assert result.pep_match is False
        assert result.edd_required is True

        assert len(result.matches) == 1
        match = result.matches[0]
        assert match.entity_id == "OFAC-001"
        assert match.match_score == 100
        assert match.list_name == "OFAC SDN List"
        assert match.metadata['matched_name'] == "Putin Vladimir"
        assert match.metadata['base_score'] == 85
        assert match.metadata['boosts'] == {'date_of_birth': 15, 'subject_type': 5}

    def test_sanctioned_individual_without_dob(self, engine):
        result = engine.screen(ScreeningRequest(subject_name="Vladimir Putin"))

        assert result.matches[0].match_score == 90
        assert result.risk_level == RiskLevel.CRITICAL
        assert result.metadata['identity_notes'] == ["date_of_birth not provided", "nationality not provided"]

    def test_clean_individual(self, engine):
        result = engine.screen(ScreeningRequest(subject_name="John Smith", date_of_birth=date(1980, 1, 1)))

        assert result.matches == []
        assert result.match_found is False
        assert result.risk_score == 0
        assert result.risk_level == RiskLevel.LOW
        assert result.complete is True
        assert result.edd_required is False

    def test_pep_individual(self, engine):
        result = engine.screen(ScreeningRequest(subject_name="Robert Johnson", nationality="UK"))

        assert result.pep_match is True
        assert result.sanctions_match is False
        assert result.risk_level == RiskLevel.CRITICAL
        assert result.matches[0].entity_id == "PEP-001"
        assert result.matches[0].positions == ["Former Member of Parliament", "Government Minister"]

    def test_company_never_screened_against_pep(self, engine):
        result = engine.screen(ScreeningRequest(subject_name="Robert Johnson", subject_type=SubjectType.COMPANY))

        assert result.pep_match is False
        assert result.matches == []
        assert result.risk_level == RiskLevel.LOW
        assert "UK PEP Database" not in result.metadata['data_sources']

    def test_clean_company(self, engine):
        result = engine.screen(ScreeningRequest(subject_name="Acme Widgets Ltd", subject_type=SubjectType.COMPANY,
                                                company_number="01234567"))

        assert result.risk_score == 0
        assert result.risk_level == RiskLevel.LOW
        assert not (result.sanctions_match or result.pep_match or result.adverse_media)

    def test_adverse_media_company(self, engine):
        result = engine.screen(ScreeningRequest(subject_name="Northgate Offshore Holdings",
                                                subject_type=SubjectType.COMPANY))

        assert result.adverse_media is True
        assert result.sanctions_match is False
        assert result.matches[0].entity_id == "AM-001"
        assert result.matches[0].match_type == MatchType.ADVERSE_MEDIA
        assert result.risk_score == 100
        assert result.risk_level == RiskLevel.CRITICAL

    def test_validation_error_before_search(self, engine):
        with pytest.raises(ValidationError):
            engine.screen(ScreeningRequest(subject_name="<Vladimir Putin>"))

    def test_metadata(self, engine, sample_store):
        result = engine.screen(ScreeningRequest(subject_name="John Smith"))

        metadata = result.metadata
        assert metadata['provider'] == "AML Screening Engine"
        assert metadata['subject_type'] == "INDIVIDUAL"
        assert metadata['unavailable_lists'] == []
        assert metadata['uncovered_corpora'] == []
        assert metadata['lists_loaded'] is True
        assert metadata['computed_risk_level'] == "LOW"
        assert set(metadata['data_sources']) == {
            "OFAC SDN List", "UN Consolidated List", "EU Sanctions List",
            "UK PEP Database", "EU PEP Database", "Adverse Media Sample",
        }
        assert metadata['list_snapshot_at'] == sample_store.snapshot().refreshed_at.isoformat()

    def test_same_snapshot_gives_same_result(self, engine):
        request = ScreeningRequest(subject_name="Vladimir Putin", date_of_birth=PUTIN_DOB)
        first = engine.screen(request).to_dict()
        second = engine.screen(request).to_dict()

        first['metadata'].pop('timestamp')
        second['metadata'].pop('timestamp')
        assert first == second

    def test_concurrent_screenings_during_refresh(self, config):
        store = ListStore([SampleListProvider()])
        store.init()
        engine = ScreeningEngine(store, vendor=SimulatedVendorGateway(0), config=config)
        request = ScreeningRequest(subject_name="Vladimir Putin", date_of_birth=PUTIN_DOB)

        with ThreadPoolExecutor(max_workers=4) as pool:
            futures = [pool.submit(engine.screen, request) for _ in range(8)]
            store.refresh()
            results = [f.result() for f in futures]

        assert all(r.risk_level == RiskLevel.CRITICAL for r in results)
        assert all(r.complete for r in results)

    def test_screen_officers(self, engine):
        company = CompanyProfile("07654321", "NORTHERN HOLDINGS LTD", officers=[
            {'name': 'PUTIN, Vladimir', 'officer_role': 'director', 'nationality': 'Russia',
             'appointed_on': '2019-04-01'},
            {'name': 'Jane Smith', 'officer_role': 'secretary'},
            {'name': None, 'officer_role': 'director'},
        ])

        matches = engine.screen_officers(company)

        assert [m.entity_id for m in matches] == ["OFAC-001"]
        assert matches[0].match_type == MatchType.SANCTIONS
        assert matches[0].metadata['boosts'] == {'nationality': 10, 'subject_type': 5}
        assert matches[0].metadata['company_officer'] == {
            'name': 'PUTIN, Vladimir',
            'officer_role': 'director',
            'appointed_on': '2019-04-01',
            'company_name': 'NORTHERN HOLDINGS LTD',
            'company_number': '07654321',
        }

    def test_officer_hits_rescore_company(self, engine):
        result = engine.screen(ScreeningRequest(subject_name="Northern Holdings Ltd",
                                                subject_type=SubjectType.COMPANY))
        company = CompanyProfile("07654321", "NORTHERN HOLDINGS LTD",
                                 officers=[{'name': 'Lukashenko, Alexander'}])

        assert engine.with_additional_matches(result, []) is result
        combined = engine.with_additional_matches(result, engine.screen_officers(company))

        assert result.risk_level == RiskLevel.LOW
        assert combined.sanctions_match is True
        assert combined.risk_level == RiskLevel.CRITICAL
        assert combined.metadata['computed_risk_level'] == "CRITICAL"
        assert [m.entity_id for m in combined.matches] == ["EU-001"]
        assert result.matches == []

    def test_result_to_dict(self, engine):
        data = engine.screen(ScreeningRequest(subject_name="Vladimir Putin")).to_dict()

        assert data['status'] == "COMPLETED"
        assert data['risk_level'] == "CRITICAL"
        assert data['match_found'] is True
        assert data['matches'][0]['match_type'] == "SANCTIONS"
        json.dumps(data)

    def test_operation_stats_recorded(self, engine):
        engine.screen(ScreeningRequest(subject_name="John Smith"))
        assert get_operation_stats('screen')['count'] >= 1


class TestDegradedScreening:
    """Screenings while a source list is unavailable"""

    @pytest.fixture
    def degraded_engine(self, config):
        store = ListStore([SampleListProvider(), FailingProvider("Broken PEP Feed", MatchType.PEP)])
        store.init()
        return ScreeningEngine(store, vendor=SimulatedVendorGateway(0), config=config)

    def test_incomplete_screening_never_reports_low(self, degraded_engine):
        result = degraded_engine.screen(ScreeningRequest(subject_name="John Smith"))

        assert result.complete is False
        assert result.status == ScreeningStatus.INCOMPLETE
        assert result.risk_score == 0
        assert result.risk_level is None
        assert result.metadata['computed_risk_level'] == "LOW"
        assert result.metadata['unavailable_lists'] == ["Broken PEP Feed"]
        assert result.to_dict()['risk_level'] is None

    def test_incomplete_screening_keeps_higher_levels(self, degraded_engine):
        result = degraded_engine.screen(ScreeningRequest(subject_name="Vladimir Putin"))

        assert result.complete is False
        assert result.risk_level == RiskLevel.CRITICAL
        assert result.edd_required is True

    def test_company_unaffected_by_missing_pep_list(self, degraded_engine):
        result = degraded_engine.screen(ScreeningRequest(subject_name="Acme Widgets Ltd",
                                                         subject_type=SubjectType.COMPANY))

        assert result.complete is True
        assert result.risk_level == RiskLevel.LOW

    @pytest.fixture
    def sanctions_only_engine(self, config):
        store = ListStore([SampleListProvider({
            "Sanctions Only": (MatchType.SANCTIONS, [{'id': 'S-1', 'name': 'Ivan Petrov'}]),
        })])
        store.init()
        return ScreeningEngine(store, vendor=SimulatedVendorGateway(0), config=config)

    def test_corpus_without_sources_never_reports_low(self, sanctions_only_engine):
        result = sanctions_only_engine.screen(ScreeningRequest(subject_name="Maria Garcia"))

        assert result.complete is False
        assert result.status == ScreeningStatus.INCOMPLETE
        assert result.risk_level is None
        assert result.metadata['uncovered_corpora'] == ["PEP", "ADVERSE_MEDIA"]
        assert result.metadata['unavailable_lists'] == []
        assert result.metadata['data_sources'] == ["Sanctions Only"]

    def test_company_without_adverse_media_sources(self, sanctions_only_engine):
        result = sanctions_only_engine.screen(ScreeningRequest(subject_name="Acme Widgets Ltd",
                                                               subject_type=SubjectType.COMPANY))

        assert result.complete is False
        assert result.metadata['uncovered_corpora'] == ["ADVERSE_MEDIA"]

    def test_uncovered_corpus_keeps_sanctions_hit(self, sanctions_only_engine):
        result = sanctions_only_engine.screen(ScreeningRequest(subject_name="Ivan Petrov"))

        assert result.complete is False
        assert result.sanctions_match is True
        assert result.risk_level == RiskLevel.CRITICAL

    def test_lists_never_loaded(self, config):
        engine = ScreeningEngine(ListStore([SampleListProvider()]), vendor=SimulatedVendorGateway(0),
                                 config=config)

        result = engine.screen(ScreeningRequest(subject_name="John Smith"))

        assert result.complete is False
        assert result.risk_level is None
        assert result.metadata['lists_loaded'] is False
        assert result.metadata['list_snapshot_at'] is None


class TestVendorDeadline:
    """Timeout and cancellation at the vendor boundary"""

    def test_timeout_when_vendor_slower_than_deadline(self, sample_store, config):
        engine = ScreeningEngine(sample_store, vendor=SimulatedVendorGateway(2.0), config=config)

        with pytest.raises(ScreeningTimeout) as exc_info:
            engine.screen(ScreeningRequest(subject_name="John Smith"), timeout=0.05)
        assert exc_info.value.code == "SCREENING_TIMEOUT"
        assert exc_info.value.details() == {'timeout_seconds': 0.05}

    def test_vendor_within_deadline(self, sample_store, config):
        engine = ScreeningEngine(sample_store, vendor=SimulatedVendorGateway(0.01), config=config)
        result = engine.screen(ScreeningRequest(subject_name="John Smith"), timeout=5)
        assert result.risk_level == RiskLevel.LOW

    def test_cancelled_vendor(self, sample_store, config):
        vendor = SimulatedVendorGateway(0)
        engine = ScreeningEngine(sample_store, vendor=vendor, config=config)

        vendor.cancel()
        with pytest.raises(ScreeningTimeout, match="cancelled"):
            engine.screen(ScreeningRequest(subject_name="John Smith"))

        vendor.reset()
        assert engine.screen(ScreeningRequest(subject_name="John Smith")).complete is True


class TestBulkAndCli:
    """CSV bulk screening and command-line entry point"""

    def test_bulk_screen(self, engine, tmp_path):
        csv_file = tmp_path / "subjects.csv"
        with open(csv_file, 'w', newline='', encoding='utf-8') as f:
            writer = csv.DictWriter(f, fieldnames=['name', 'subject_type', 'date_of_birth'])
            writer.writeheader()
            writer.writerow({'name': 'Vladimir Putin', 'subject_type': 'INDIVIDUAL',
                             'date_of_birth': '1952-10-07'})
            writer.writerow({'name': 'Acme Widgets Ltd', 'subject_type': 'COMPANY', 'date_of_birth': ''})
            writer.writerow({'name': '<bad>', 'subject_type': 'INDIVIDUAL', 'date_of_birth': ''})
            writer.writerow({'name': '', 'subject_type': 'INDIVIDUAL', 'date_of_birth': ''})

        summary = engine.bulk_screen(str(csv_file))

        assert summary['screening_info']['total_screened'] == 2
        assert summary['screening_info']['total_hits'] == 1
        assert summary['screening_info']['invalid_rows'] == 1
        assert summary['results'][0]['risk_level'] == "CRITICAL"
        assert summary['errors'][0]['code'] == "BLOCKED_CHARACTERS"

    @pytest.fixture
    def cli_config(self, tmp_path):
        config_file = tmp_path / "config.yaml"
        config_file.write_text("screening:\n  vendor_latency_seconds: 0\n")
        ConfigManager.reset_instance()
        yield str(config_file)
        ConfigManager.reset_instance()

    def test_cli_screen(self, cli_config, capsys):
        exit_code = main(["Vladimir Putin", "--dob", "1952-10-07", "--config", cli_config])

        assert exit_code == 0
        output = json.loads(capsys.readouterr().out)
        assert output['risk_level'] == "CRITICAL"
        assert output['matches'][0]['entity_id'] == "OFAC-001"

    def test_cli_validation_error(self, cli_config, capsys):
        exit_code = main(["<bad name>", "--config", cli_config])

        assert exit_code == 2
        assert '"BLOCKED_CHARACTERS"' in capsys.readouterr().err
