"""Canonical job record and the enumerations shared across the pipeline."""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every datetime in the catalog is stored in."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: datetime) -> datetime:
    """Convert an aware datetime to naive UTC; naive values are assumed UTC already."""
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class JobSource(Enum):
    """Enumeration of job sources."""
    USAJOBS = "USAJOBS"
    REMOTEOK = "REMOTEOK"
    REMOTIVE = "REMOTIVE"
    THE_MUSE = "THE_MUSE"
    ADZUNA = "ADZUNA"
    INDEED = "INDEED"
    ANGELLIST = "ANGELLIST"


class JobType(Enum):
    FULL_TIME = "FULL_TIME"
    PART_TIME = "PART_TIME"
    CONTRACT = "CONTRACT"
    TEMPORARY = "TEMPORARY"
    INTERNSHIP = "INTERNSHIP"
    FREELANCE = "FREELANCE"
    VOLUNTEER = "VOLUNTEER"


class RemoteOption(Enum):
    REMOTE = "REMOTE"
    HYBRID = "HYBRID"
    ON_SITE = "ON_SITE"
    FLEXIBLE = "FLEXIBLE"


class ExperienceLevel(Enum):
    """Experience levels, declared in ascending order of seniority."""
    ENTRY = "ENTRY"
    JUNIOR = "JUNIOR"
    MID = "MID"
    SENIOR = "SENIOR"
    LEAD = "LEAD"
    EXECUTIVE = "EXECUTIVE"

    @property
    def ordinal(self) -> int:
        return list(ExperienceLevel).index(self)


class JobState(Enum):
    NEW = "NEW"
    ACTIVE = "ACTIVE"
    STALE = "STALE"
    EXPIRED = "EXPIRED"
    DUPLICATE = "DUPLICATE"


class SalaryPeriod(Enum):
    HOURLY = "HOURLY"
    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"


@dataclass
class RawPosting:
    """A posting exactly as a source adapter delivered it."""
    source: JobSource
    external_id: str
    payload: Dict[str, Any]
    fetched_at: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        if not isinstance(self.source, JobSource):
            self.source = JobSource(self.source)
        self.external_id = str(self.external_id)
        self.fetched_at = as_naive_utc(self.fetched_at)

    @property
    def job_id(self) -> str:
        return f"{self.source.value}_{self.external_id}"


@dataclass
class RemovalNotice:
    """Signal from an adapter that a source no longer lists a posting."""
    source: JobSource
    external_id: str

    def __post_init__(self):
        if not isinstance(self.source, JobSource):
            self.source = JobSource(self.source)
        self.external_id = str(self.external_id)

    @property
    def job_id(self) -> str:
        return f"{self.source.value}_{self.external_id}"


@dataclass
class Salary:
    """Annualized salary range."""
    min: Optional[float] = None
    max: Optional[float] = None
    currency: str = "USD"
    period: SalaryPeriod = SalaryPeriod.YEARLY

    @property
    def is_known(self) -> bool:
        return self.min is not None or self.max is not None

    @property
    def bounds(self):
        """(low, high) with a missing side filled from the other."""
        low = self.min if self.min is not None else self.max
        high = self.max if self.max is not None else self.min
        return low, high


@dataclass
class Location:
    country: str
    city: Optional[str] = None
    state: Optional[str] = None
    raw: Optional[str] = None

    def key(self) -> str:
        """Lower-cased ``city|state|country`` used for fingerprints and exact matching."""
        parts = [self.city or "", self.state or "", self.country or ""]
        return "|".join(p.strip().lower() for p in parts)

    def describe(self) -> str:
        return ", ".join(p for p in (self.city, self.state, self.country) if p)


@dataclass
class JobMetadata:
    """Provenance tracking for a canonical record."""
    first_seen_at: datetime
    last_checked_at: datetime
    check_count: int = 1
    is_duplicate: bool = False
    parent_job_id: Optional[str] = None


@dataclass
class CanonicalJob:
    """The single authoritative record for a real-world posting.

    Attributes:
        id: ``{source}_{external_id}`` of the first sighting
        normalized_title: Case-folded, punctuation- and seniority-stripped title used for matching
        deduplication_hash: Content fingerprint used for exact re-sighting detection
        relevance_score: Placeholder, filled per query and never persisted as ground truth
        quality_score: Completeness heuristic (0-100)
    """
    id: str
    source: JobSource
    external_id: str
    title: str
    normalized_title: str
    company: str
    location: Location
    application_url: str
    posted_at: datetime
    metadata: JobMetadata
    remote_option: RemoteOption = RemoteOption.ON_SITE
    job_type: JobType = JobType.FULL_TIME
    experience_level: Optional[ExperienceLevel] = None
    salary: Optional[Salary] = None
    description: str = ""
    summary: str = ""
    required_skills: List[str] = field(default_factory=list)
    preferred_skills: List[str] = field(default_factory=list)
    categories: List[str] = field(default_factory=list)
    updated_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    is_active: bool = True
    state: JobState = JobState.NEW
    deduplication_hash: str = ""
    relevance_score: float = 0.0
    quality_score: float = 0.0

    def __post_init__(self):
        if not isinstance(self.source, JobSource):
            self.source = JobSource(self.source)
        if self.updated_at is None:
            self.updated_at = self.posted_at

    @property
    def is_duplicate(self) -> bool:
        return self.metadata.is_duplicate

    @property
    def parent_job_id(self) -> Optional[str]:
        return self.metadata.parent_job_id

    @property
    def company_key(self) -> str:
        return self.company.strip().lower()

    def is_scorable(self, now: Optional[datetime] = None) -> bool:
        """Active, non-expired and not a duplicate."""
        if self.is_duplicate or not self.is_active:
            return False
        if self.state in (JobState.EXPIRED, JobState.DUPLICATE):
            return False
        if self.expires_at and (now or utcnow()) >= self.expires_at:
            return False
        return True

    def record_sighting(self, seen_at: datetime) -> None:
        self.metadata.check_count += 1
        self.metadata.last_checked_at = max(self.metadata.last_checked_at, seen_at)

    def merge_from(self, other: "CanonicalJob") -> List[str]:
        """Fill optional fields that ``other`` observed and this record lacks.

        Args:
            other: A newer sighting of the same job

        Returns:
            Names of the fields that changed
        """
        changed = []
        if self.salary is None and other.salary is not None and other.salary.is_known:
            self.salary = other.salary
            changed.append("salary")
        if self.experience_level is None and other.experience_level is not None:
            self.experience_level = other.experience_level
            changed.append("experience_level")
        if other.expires_at and other.expires_at != self.expires_at:
            self.expires_at = other.expires_at
            changed.append("expires_at")
        if len(other.description) > len(self.description):
            self.description = other.description
            self.summary = other.summary
            changed.append("description")
        for name in ("required_skills", "preferred_skills", "categories"):
            current = getattr(self, name)
            seen = {s.lower() for s in current}
            extra = [s for s in getattr(other, name) if s.lower() not in seen]
            if extra:
                setattr(self, name, current + extra)
                changed.append(name)
        if self.location.city is None and other.location.city:
            self.location.city = other.location.city
            changed.append("location")
        if self.location.state is None and other.location.state:
            self.location.state = other.location.state
            if "location" not in changed:
                changed.append("location")
        if other.updated_at and (self.updated_at is None or other.updated_at > self.updated_at):
            self.updated_at = other.updated_at
        return changed
