"""Per-source field extraction and enum mapping tables.

Every job board spells the same concepts differently. Each ``SourceMapping``
subclass knows one board's payload shape and owns explicit tables that
translate that board's job type, experience level and remote-mode vocabulary
into the canonical enums. Mappings are looked up through ``SourceRegistry``,
keyed by ``JobSource``.
"""
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional
import logging

from jobcatalog.domain.job import ExperienceLevel, JobSource, JobType, RemoteOption

logger = logging.getLogger(__name__)


class SourceMapping(ABC):
    """Base class for all source mappings."""

    source: JobSource

    JOB_TYPES: Dict[str, JobType] = {
        'full_time': JobType.FULL_TIME,
        'full-time': JobType.FULL_TIME,
        'full time': JobType.FULL_TIME,
        'part_time': JobType.PART_TIME,
        'part-time': JobType.PART_TIME,
        'part time': JobType.PART_TIME,
        'contract': JobType.CONTRACT,
        'contractor': JobType.CONTRACT,
        'temporary': JobType.TEMPORARY,
        'internship': JobType.INTERNSHIP,
        'freelance': JobType.FREELANCE,
        'volunteer': JobType.VOLUNTEER,
    }
    EXPERIENCE_LEVELS: Dict[str, ExperienceLevel] = {}
    REMOTE_MODES: Dict[str, RemoteOption] = {
        'remote': RemoteOption.REMOTE,
        'hybrid': RemoteOption.HYBRID,
        'onsite': RemoteOption.ON_SITE,
        'on-site': RemoteOption.ON_SITE,
        'on_site': RemoteOption.ON_SITE,
        'flexible': RemoteOption.FLEXIBLE,
    }
    DEFAULT_JOB_TYPE = JobType.FULL_TIME
    DEFAULT_REMOTE = RemoteOption.ON_SITE
    ID_FIELDS = ('external_id', 'id', 'slug')

    def external_id(self, payload: Dict[str, Any]) -> Optional[str]:
        """The source's own identifier for a payload, if it carries one."""
        for name in self.ID_FIELDS:
            value = payload.get(name)
            if value not in (None, ''):
                return str(value)
        return None

    @abstractmethod
    def extract(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Pull canonical fields out of a source payload.

        Args:
            payload: Raw payload as delivered by the source adapter

        Returns:
            Dictionary with any of the keys ``title``, ``company``, ``location``
            (text or ``{city, state, country}``), ``application_url``,
            ``description``, ``job_type``, ``experience``, ``remote``,
            ``salary_min``, ``salary_max``, ``salary_period``, ``salary_text``,
            ``skills``, ``preferred_skills``, ``categories``, ``posted_at``,
            ``expires_at``. Missing values are ``None``.
        """

    def map_job_type(self, raw: Optional[str]) -> JobType:
        if not raw:
            return self.DEFAULT_JOB_TYPE
        key = str(raw).strip().lower()
        if key in self.JOB_TYPES:
            return self.JOB_TYPES[key]
        for token, job_type in self.JOB_TYPES.items():
            if token in key:
                return job_type
        logger.debug(f"Unmapped {self.source.value} job type '{raw}', using {self.DEFAULT_JOB_TYPE.value}")
        return self.DEFAULT_JOB_TYPE

    def map_experience(self, raw: Optional[str]) -> Optional[ExperienceLevel]:
        if not raw:
            return None
        return self.EXPERIENCE_LEVELS.get(str(raw).strip().lower())

    def map_remote(self, raw: Any) -> RemoteOption:
        if raw is True:
            return RemoteOption.REMOTE
        if raw is False or raw is None:
            return self.DEFAULT_REMOTE
        return self.REMOTE_MODES.get(str(raw).strip().lower(), self.DEFAULT_REMOTE)


def _first(items: Optional[List[Any]]) -> Any:
    return items[0] if items else None


class RemoteOKMapping(SourceMapping):
    """remoteok.com: every listing is remote; salaries are numeric, 0 meaning unknown."""

    source = JobSource.REMOTEOK
    DEFAULT_REMOTE = RemoteOption.REMOTE

    def extract(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        tags = [t for t in payload.get('tags') or [] if t]
        return {
            'title': payload.get('position'),
            'company': payload.get('company'),
            'location': payload.get('location') or 'Remote',
            'application_url': payload.get('apply_url') or payload.get('url'),
            'description': payload.get('description') or '',
            'job_type': next((t for t in tags if t.lower() in self.JOB_TYPES), None),
            'experience': None,
            'remote': True,
            'salary_min': payload.get('salary_min') or None,
            'salary_max': payload.get('salary_max') or None,
            'salary_period': 'YEARLY',
            'salary_text': None,
            'skills': tags,
            'preferred_skills': [],
            'categories': [],
            'posted_at': payload.get('epoch') or payload.get('date') or payload.get('created_at'),
            'expires_at': None,
        }


class RemotiveMapping(SourceMapping):
    """remotive.com: remote listings with a free-text salary field."""

    source = JobSource.REMOTIVE
    DEFAULT_REMOTE = RemoteOption.REMOTE

    def extract(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return {
            'title': payload.get('title'),
            'company': payload.get('company_name'),
            'location': payload.get('candidate_required_location') or 'Remote',
            'application_url': payload.get('url'),
            'description': payload.get('description') or '',
            'job_type': payload.get('job_type'),
            'experience': None,
            'remote': True,
            'salary_min': None,
            'salary_max': None,
            'salary_period': None,
            'salary_text': payload.get('salary'),
            'skills': payload.get('tags') or [],
            'preferred_skills': [],
            'categories': [payload['category']] if payload.get('category') else [],
            'posted_at': payload.get('publication_date'),
            'expires_at': None,
        }


class TheMuseMapping(SourceMapping):
    """themuse.com: structured levels and a list of named locations."""

    source = JobSource.THE_MUSE
    EXPERIENCE_LEVELS = {
        'internship': ExperienceLevel.ENTRY,
        'entry level': ExperienceLevel.ENTRY,
        'entry': ExperienceLevel.ENTRY,
        'mid level': ExperienceLevel.MID,
        'mid': ExperienceLevel.MID,
        'senior level': ExperienceLevel.SENIOR,
        'senior': ExperienceLevel.SENIOR,
        'management': ExperienceLevel.LEAD,
        'executive': ExperienceLevel.EXECUTIVE,
    }

    def extract(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        locations = [loc.get('name', '') for loc in payload.get('locations') or []]
        location_text = _first([loc for loc in locations if loc])
        level = _first(payload.get('levels'))
        remote = None
        if any('remote' in loc.lower() for loc in locations):
            remote = 'remote'
        elif any('flexible' in loc.lower() for loc in locations):
            remote = 'flexible'
        company = payload.get('company') or {}
        return {
            'title': payload.get('name'),
            'company': company.get('name') if isinstance(company, dict) else company,
            'location': location_text,
            'application_url': (payload.get('refs') or {}).get('landing_page'),
            'description': payload.get('contents') or '',
            'job_type': payload.get('type'),
            'experience': (level.get('short_name') or level.get('name')) if level else None,
            'remote': remote,
            'salary_min': None,
            'salary_max': None,
            'salary_period': None,
            'salary_text': None,
            'skills': [],
            'preferred_skills': [],
            'categories': [c.get('name') for c in payload.get('categories') or [] if c.get('name')],
            'posted_at': payload.get('publication_date'),
            'expires_at': None,
        }


class USAJobsMapping(SourceMapping):
    """data.usajobs.gov search results (``MatchedObjectDescriptor`` objects)."""

    source = JobSource.USAJOBS
    JOB_TYPES = dict(SourceMapping.JOB_TYPES, **{
        'full-time': JobType.FULL_TIME,
        'part-time': JobType.PART_TIME,
        'intermittent': JobType.TEMPORARY,
        'job sharing': JobType.PART_TIME,
        'multiple schedules': JobType.FULL_TIME,
    })
    PERIODS = {'PA': 'YEARLY', 'PH': 'HOURLY', 'PM': 'MONTHLY'}
    ID_FIELDS = ('MatchedObjectId', 'PositionID')

    def extract(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        position_location = _first(payload.get('PositionLocation')) or {}
        details = ((payload.get('UserArea') or {}).get('Details')) or {}
        remuneration = _first(payload.get('PositionRemuneration')) or {}
        schedule = _first(payload.get('PositionSchedule')) or {}
        category = _first(payload.get('JobCategory')) or {}

        location: Any = position_location.get('LocationName')
        if position_location.get('CountryCode'):
            location = {
                'city': position_location.get('CityName'),
                'state': position_location.get('CountrySubDivisionCode'),
                'country': position_location.get('CountryCode'),
            }

        telework = payload.get('TeleworkEligible')
        remote = None
        if telework in (True, 'true', 'True'):
            remote = 'hybrid'
        if str(details.get('RemoteIndicator', '')).lower() == 'true':
            remote = 'remote'

        return {
            'title': payload.get('PositionTitle'),
            'company': payload.get('OrganizationName') or payload.get('DepartmentName'),
            'location': location,
            'application_url': _first(payload.get('ApplyURI')) or payload.get('PositionURI'),
            'description': details.get('JobSummary') or payload.get('QualificationSummary') or '',
            'job_type': schedule.get('Name'),
            'experience': None,
            'remote': remote,
            'salary_min': remuneration.get('MinimumRange'),
            'salary_max': remuneration.get('MaximumRange'),
            'salary_period': self.PERIODS.get(remuneration.get('RateIntervalCode', 'PA'), 'YEARLY'),
            'salary_text': None,
            'skills': [],
            'preferred_skills': [],
            'categories': [category['Name']] if category.get('Name') else [],
            'posted_at': payload.get('PublicationStartDate'),
            'expires_at': payload.get('ApplicationCloseDate'),
        }


class AdzunaMapping(SourceMapping):
    """api.adzuna.com search results."""

    source = JobSource.ADZUNA
    JOB_TYPES = dict(SourceMapping.JOB_TYPES, **{
        'permanent': JobType.FULL_TIME,
    })

    def extract(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        location = payload.get('location') or {}
        area = location.get('area') or []
        structured = None
        if area:
            structured = {
                'country': area[0],
                'state': area[1] if len(area) > 1 else None,
                'city': area[-1] if len(area) > 2 else None,
            }
        category = payload.get('category') or {}
        company = payload.get('company') or {}
        return {
            'title': payload.get('title'),
            'company': company.get('display_name'),
            'location': structured or location.get('display_name'),
            'application_url': payload.get('redirect_url'),
            'description': payload.get('description') or '',
            'job_type': payload.get('contract_type') or payload.get('contract_time'),
            'experience': None,
            'remote': None,
            'salary_min': payload.get('salary_min'),
            'salary_max': payload.get('salary_max'),
            'salary_period': 'YEARLY',
            'salary_text': None,
            'skills': [],
            'preferred_skills': [],
            'categories': [category['label']] if category.get('label') else [],
            'posted_at': payload.get('created'),
            'expires_at': None,
        }


class GenericMapping(SourceMapping):
    """Flat payloads already close to the canonical shape (Indeed and AngelList exports)."""

    EXPERIENCE_LEVELS = {level.value.lower(): level for level in ExperienceLevel}

    def __init__(self, source: JobSource):
        self.source = source

    def extract(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return {
            'title': payload.get('title'),
            'company': payload.get('company'),
            'location': payload.get('location'),
            'application_url': payload.get('url') or payload.get('apply_url'),
            'description': payload.get('description') or '',
            'job_type': payload.get('job_type'),
            'experience': payload.get('experience_level'),
            'remote': payload.get('remote'),
            'salary_min': payload.get('salary_min'),
            'salary_max': payload.get('salary_max'),
            'salary_period': payload.get('salary_period'),
            'salary_text': payload.get('salary'),
            'skills': payload.get('skills') or [],
            'preferred_skills': payload.get('preferred_skills') or [],
            'categories': payload.get('categories') or [],
            'posted_at': payload.get('posted_at'),
            'expires_at': payload.get('expires_at'),
        }


class SourceRegistry:
    """Maps each ``JobSource`` to the mapping that understands its payloads."""

    def __init__(self):
        self._mappings: Dict[JobSource, SourceMapping] = {}

    def register(self, mapping: SourceMapping) -> None:
        self._mappings[mapping.source] = mapping

    def get(self, source: JobSource) -> SourceMapping:
        """Return the mapping for a source.

        Raises:
            KeyError: If no mapping is registered for the source
        """
        try:
            return self._mappings[source]
        except KeyError:
            raise KeyError(f"No source mapping registered for {source.value}") from None

    def __contains__(self, source: JobSource) -> bool:
        return source in self._mappings

    @property
    def sources(self) -> List[JobSource]:
        return list(self._mappings)


def default_registry() -> SourceRegistry:
    """Registry with a mapping for every known source."""
    registry = SourceRegistry()
    for mapping in (
        RemoteOKMapping(),
        RemotiveMapping(),
        TheMuseMapping(),
        USAJobsMapping(),
        AdzunaMapping(),
        GenericMapping(JobSource.INDEED),
        GenericMapping(JobSource.ANGELLIST),
    ):
        registry.register(mapping)
    return registry
