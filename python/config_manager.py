"""
Configuration Management Module
Loads and validates configuration from config.yaml
"""

import os
import yaml
import logging
from pathlib import Path
from typing import Dict, Any, Optional, List
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


@dataclass
class MatcherProfileConfig:
    """Scoring parameters for one name-matcher profile"""
    containment_score: int = 85
    partial_token_max: int = 75
    partial_token_credit: float = 0.7
    min_partial_token_length: int = 4


@dataclass
class MatchingConfig:
    """Matching configuration parameters"""
    floor: int = 70
    dob_boost: int = 15
    nationality_boost: int = 10
    subject_type_boost: int = 5
    profiles: Dict[str, MatcherProfileConfig] = field(default_factory=lambda: {
        'sanctions': MatcherProfileConfig(containment_score=90, partial_token_max=85),
        'general': MatcherProfileConfig(containment_score=85, partial_token_max=75),
    })
    corpus_profiles: Dict[str, str] = field(default_factory=lambda: {
        'SANCTIONS': 'sanctions',
        'PEP': 'general',
        'ADVERSE_MEDIA': 'general',
        'WATCHLIST': 'general',
    })


@dataclass
class RiskConfig:
    """Risk aggregation weights and level thresholds"""
    weights: Dict[str, float] = field(default_factory=lambda: {
        'SANCTIONS': 1.5,
        'PEP': 1.2,
        'ADVERSE_MEDIA': 1.0,
        'WATCHLIST': 1.1,
    })
    mean_weight: float = 0.4
    max_weight: float = 0.6
    critical_sanctions_score: int = 85
    critical_score: int = 90
    high_score: int = 70
    medium_score: int = 40


@dataclass
class FeedConfig:
    """A JSON watchlist feed"""
    list_id: str
    match_type: str
    url: str


@dataclass
class DataConfig:
    """Data source configuration"""
    un_url: str = "https://scsanctions.un.org/resources/xml/en/consolidated.xml"
    un_enabled: bool = False
    use_sample_data: bool = True
    staleness_hours: float = 24
    refresh_check_minutes: float = 15
    request_timeout: int = 60
    retry_attempts: int = 3
    feeds: List[FeedConfig] = field(default_factory=list)


@dataclass
class ScreeningConfig:
    """Screening engine settings"""
    provider_name: str = "AML Screening Engine"
    version: str = "2.0"
    vendor_latency_seconds: float = 1.5
    default_timeout_seconds: float = 30.0
    max_workers: int = 4


@dataclass
class ReviewConfig:
    """Review, EDD and monitoring settings"""
    annual_review_days: int = 365
    due_window_days: int = 30
    edd_min_notes_length: int = 10


@dataclass
class InputValidationConfig:
    """Input validation configuration for user-provided data"""
    name_min_length: int = 2
    name_max_length: int = 200
    max_notes_length: int = 2000
    strict_identity_fields: bool = False
    blocked_characters: str = "<>{}[]|\\;`$"


@dataclass
class LoggingConfig:
    """Logging configuration"""
    level: str = "INFO"
    file: Optional[str] = None
    console: bool = True
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


@dataclass
class APIConfig:
    """HTTP API settings"""
    host: str = "0.0.0.0"
    port: int = 8000
    cors_origins: List[str] = field(default_factory=lambda: ["http://localhost:3000"])
    api_key_env: str = "AML_API_KEY"


@dataclass
class DatabaseConfig:
    """Database configuration"""
    url: str = "sqlite:///aml_screening.db"
    echo: bool = False


class ConfigurationError(Exception):
    """Raised when configuration is invalid"""
    pass


class ConfigManager:
    """Manages system configuration"""

    _instance: Optional['ConfigManager'] = None

    def __init__(self, config_path: Optional[str] = None):
        """Initialize configuration manager

        Args:
            config_path: Path to config.yaml file
        """
        self.config_path = Path(config_path) if config_path else self._find_config()
        self._raw_config: Dict[str, Any] = {}
        self.matching: MatchingConfig = MatchingConfig()
        self.risk: RiskConfig = RiskConfig()
        self.data: DataConfig = DataConfig()
        self.screening: ScreeningConfig = ScreeningConfig()
        self.review: ReviewConfig = ReviewConfig()
        self.input_validation: InputValidationConfig = InputValidationConfig()
        self.logging: LoggingConfig = LoggingConfig()
        self.api: APIConfig = APIConfig()
        self.database: DatabaseConfig = DatabaseConfig()

        if self.config_path and self.config_path.exists():
            self.load()
        else:
            logger.warning(f"Config file not found at {self.config_path}, using defaults")
        self._apply_env_overrides()

    def _find_config(self) -> Path:
        """Find config.yaml in common locations"""
        env_path = os.getenv('CONFIG_PATH')
        if env_path:
            return Path(env_path)

        search_paths = [
            Path(__file__).parent / "config.yaml",
            Path.cwd() / "config.yaml",
            Path.cwd() / "python" / "config.yaml",
        ]

        for path in search_paths:
            if path.exists():
                return path

        return search_paths[0]

    def load(self) -> None:
        """Load configuration from YAML file"""
        try:
            with open(self.config_path, 'r', encoding='utf-8') as f:
                self._raw_config = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}")
        except FileNotFoundError:
            raise ConfigurationError(f"Config file not found: {self.config_path}")

        self._parse_matching()
        self._parse_risk()
        self._parse_data()
        self._parse_screening()
        self._parse_review()
        self._parse_input_validation()
        self._parse_logging()
        self._parse_api()
        self._parse_database()
        self._validate()

    def _apply_env_overrides(self) -> None:
        db_url = os.getenv('DATABASE_URL')
        if db_url:
            self.database.url = db_url

    def _parse_matching(self) -> None:
        """Parse matching configuration"""
        cfg = self._raw_config.get('matching', {})
        defaults = MatchingConfig()

        profiles = dict(defaults.profiles)
        for name, profile_cfg in (cfg.get('profiles') or {}).items():
            base = profiles.get(name, MatcherProfileConfig())
            profiles[name] = MatcherProfileConfig(
                containment_score=profile_cfg.get('containment_score', base.containment_score),
                partial_token_max=profile_cfg.get('partial_token_max', base.partial_token_max),
                partial_token_credit=profile_cfg.get('partial_token_credit', base.partial_token_credit),
                min_partial_token_length=profile_cfg.get('min_partial_token_length',
                                                         base.min_partial_token_length)
            )

        corpus_profiles = dict(defaults.corpus_profiles)
        corpus_profiles.update({k.upper(): v for k, v in (cfg.get('corpus_profiles') or {}).items()})

        self.matching = MatchingConfig(
            floor=cfg.get('floor', defaults.floor),
            dob_boost=cfg.get('dob_boost', defaults.dob_boost),
            nationality_boost=cfg.get('nationality_boost', defaults.nationality_boost),
            subject_type_boost=cfg.get('subject_type_boost', defaults.subject_type_boost),
            profiles=profiles,
            corpus_profiles=corpus_profiles
        )

    def _parse_risk(self) -> None:
        """Parse risk aggregation configuration"""
        cfg = self._raw_config.get('risk', {})
        defaults = RiskConfig()
        weights = dict(defaults.weights)
        weights.update({k.upper(): float(v) for k, v in (cfg.get('weights') or {}).items()})
        self.risk = RiskConfig(
            weights=weights,
            mean_weight=cfg.get('mean_weight', defaults.mean_weight),
            max_weight=cfg.get('max_weight', defaults.max_weight),
            critical_sanctions_score=cfg.get('critical_sanctions_score', defaults.critical_sanctions_score),
            critical_score=cfg.get('critical_score', defaults.critical_score),
            high_score=cfg.get('high_score', defaults.high_score),
            medium_score=cfg.get('medium_score', defaults.medium_score)
        )

    def _parse_data(self) -> None:
        """Parse data configuration"""
        cfg = self._raw_config.get('data', {})
        feeds = []
        for feed in cfg.get('feeds') or []:
            try:
                feeds.append(FeedConfig(
                    list_id=feed['list_id'],
                    match_type=str(feed['match_type']).upper(),
                    url=feed['url']
                ))
            except KeyError as e:
                raise ConfigurationError(f"Feed entry missing required key {e}: {feed}")

        self.data = DataConfig(
            un_url=cfg.get('un_url', self.data.un_url),
            un_enabled=cfg.get('un_enabled', False),
            use_sample_data=cfg.get('use_sample_data', True),
            staleness_hours=cfg.get('staleness_hours', 24),
            refresh_check_minutes=cfg.get('refresh_check_minutes', 15),
            request_timeout=cfg.get('request_timeout', 60),
            retry_attempts=cfg.get('retry_attempts', 3),
            feeds=feeds
        )

    def _parse_screening(self) -> None:
        """Parse screening engine configuration"""
        cfg = self._raw_config.get('screening', {})
        defaults = ScreeningConfig()
        self.screening = ScreeningConfig(
            provider_name=cfg.get('provider_name', defaults.provider_name),
            version=str(cfg.get('version', defaults.version)),
            vendor_latency_seconds=cfg.get('vendor_latency_seconds', defaults.vendor_latency_seconds),
            default_timeout_seconds=cfg.get('default_timeout_seconds', defaults.default_timeout_seconds),
            max_workers=cfg.get('max_workers', defaults.max_workers)
        )

    def _parse_review(self) -> None:
        """Parse review configuration"""
        cfg = self._raw_config.get('review', {})
        self.review = ReviewConfig(
            annual_review_days=cfg.get('annual_review_days', 365),
            due_window_days=cfg.get('due_window_days', 30),
            edd_min_notes_length=cfg.get('edd_min_notes_length', 10)
        )

    def _parse_input_validation(self) -> None:
        """Parse input validation configuration"""
        cfg = self._raw_config.get('input_validation', {})
        self.input_validation = InputValidationConfig(
            name_min_length=cfg.get('name_min_length', 2),
            name_max_length=cfg.get('name_max_length', 200),
            max_notes_length=cfg.get('max_notes_length', 2000),
            strict_identity_fields=cfg.get('strict_identity_fields', False),
            blocked_characters=cfg.get('blocked_characters', "<>{}[]|\\;`$")
        )

    def _parse_logging(self) -> None:
        """Parse logging configuration"""
        cfg = self._raw_config.get('logging', {})
        self.logging = LoggingConfig(
            level=cfg.get('level', 'INFO'),
            file=cfg.get('file'),
            console=cfg.get('console', True),
            format=cfg.get('format', self.logging.format)
        )

    def _parse_api(self) -> None:
        cfg = self._raw_config.get('api', {})
        defaults = APIConfig()
        self.api = APIConfig(
            host=cfg.get('host', defaults.host),
            port=cfg.get('port', defaults.port),
            cors_origins=cfg.get('cors_origins', defaults.cors_origins),
            api_key_env=cfg.get('api_key_env', defaults.api_key_env)
        )

    def _parse_database(self) -> None:
        """Parse database configuration"""
        cfg = self._raw_config.get('database', {})
        self.database = DatabaseConfig(
            url=cfg.get('url', self.database.url),
            echo=cfg.get('echo', False)
        )

    @classmethod
    def get_instance(cls, config_path: Optional[str] = None) -> 'ConfigManager':
        """Get singleton instance of ConfigManager"""
        if cls._instance is None:
            cls._instance = ConfigManager(config_path)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Reset singleton instance (useful for testing)"""
        cls._instance = None

    def to_dict(self) -> Dict[str, Any]:
        """Export configuration as dictionary"""
        return {
            'matching': {
                'floor': self.matching.floor,
                'dob_boost': self.matching.dob_boost,
                'nationality_boost': self.matching.nationality_boost,
                'subject_type_boost': self.matching.subject_type_boost,
                'profiles': {
                    name: {
                        'containment_score': p.containment_score,
                        'partial_token_max': p.partial_token_max,
                        'partial_token_credit': p.partial_token_credit,
                        'min_partial_token_length': p.min_partial_token_length,
                    }
                    for name, p in self.matching.profiles.items()
                },
                'corpus_profiles': self.matching.corpus_profiles
            },
            'risk': {
                'weights': self.risk.weights,
                'mean_weight': self.risk.mean_weight,
                'max_weight': self.risk.max_weight,
                'critical_sanctions_score': self.risk.critical_sanctions_score,
                'critical_score': self.risk.critical_score,
                'high_score': self.risk.high_score,
                'medium_score': self.risk.medium_score
            },
            'data': {
                'un_url': self.data.un_url,
                'un_enabled': self.data.un_enabled,
                'use_sample_data': self.data.use_sample_data,
                'staleness_hours': self.data.staleness_hours,
                'refresh_check_minutes': self.data.refresh_check_minutes,
                'request_timeout': self.data.request_timeout,
                'feeds': [{'list_id': f.list_id, 'match_type': f.match_type, 'url': f.url}
                          for f in self.data.feeds]
            },
            'screening': {
                'provider_name': self.screening.provider_name,
                'version': self.screening.version,
                'vendor_latency_seconds': self.screening.vendor_latency_seconds,
                'default_timeout_seconds': self.screening.default_timeout_seconds
            },
            'review': {
                'annual_review_days': self.review.annual_review_days,
                'due_window_days': self.review.due_window_days,
                'edd_min_notes_length': self.review.edd_min_notes_length
            }
        }

    def _validate(self) -> None:
        """Validate configuration values

        Raises:
            ConfigurationError: On the first invalid value found
        """
        m = self.matching
        if not 0 <= m.floor <= 100:
            raise ConfigurationError(f"matching.floor must be within 0-100, got {m.floor}")
        for name, profile in m.profiles.items():
            if not 0 <= profile.containment_score <= 100 or not 0 <= profile.partial_token_max <= 100:
                raise ConfigurationError(f"matching.profiles.{name} scores must be within 0-100")
            if not 0 < profile.partial_token_credit <= 1:
                raise ConfigurationError(f"matching.profiles.{name}.partial_token_credit must be in (0, 1]")
        for corpus, profile_name in m.corpus_profiles.items():
            if profile_name not in m.profiles:
                raise ConfigurationError(f"matching.corpus_profiles.{corpus} references unknown profile "
                                         f"'{profile_name}'")

        r = self.risk
        for match_type, weight in r.weights.items():
            if weight <= 0:
                raise ConfigurationError(f"risk.weights.{match_type} must be positive, got {weight}")
        if abs(r.mean_weight + r.max_weight - 1.0) > 1e-6:
            raise ConfigurationError(
                f"risk.mean_weight + risk.max_weight must equal 1.0, got {r.mean_weight + r.max_weight}"
            )
        if not r.medium_score < r.high_score <= r.critical_score:
            raise ConfigurationError("risk thresholds must satisfy medium_score < high_score <= critical_score")

        if self.data.staleness_hours <= 0:
            raise ConfigurationError("data.staleness_hours must be positive")
        if self.data.refresh_check_minutes < 0:
            raise ConfigurationError("data.refresh_check_minutes must be 0 (disabled) or positive")
        if self.input_validation.name_min_length < 1:
            raise ConfigurationError("input_validation.name_min_length must be at least 1")


def get_config(config_path: Optional[str] = None) -> ConfigManager:
    """Convenience function to get configuration instance"""
    return ConfigManager.get_instance(config_path)


def setup_logging(logging_config: Optional[LoggingConfig] = None) -> None:
    """Configure root logging from the logging section"""
    cfg = logging_config or get_config().logging
    handlers: List[logging.Handler] = []
    if cfg.console:
        handlers.append(logging.StreamHandler())
    if cfg.file:
        Path(cfg.file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(cfg.file, encoding='utf-8'))
    logging.basicConfig(
        level=getattr(logging, cfg.level.upper(), logging.INFO),
        format=cfg.format,
        handlers=handlers or None
    )
