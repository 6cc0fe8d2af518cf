"""Relevance scoring of canonical jobs against a user's search criteria."""
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from jobcatalog.domain.job import CanonicalJob, ExperienceLevel, RemoteOption, utcnow
from jobcatalog.domain.normalization import REMOTE_LOCATION_WORDS, WORLDWIDE, normalize_title, parse_location

logger = logging.getLogger(__name__)

NEUTRAL = 0.5
MAX_LEVEL_DISTANCE = 5

REMOTE_FIT = {
    RemoteOption.REMOTE: 1.0,
    RemoteOption.HYBRID: 0.8,
    RemoteOption.FLEXIBLE: 0.7,
    RemoteOption.ON_SITE: 0.0,
}


@dataclass
class UserSearchCriteria:
    """A user's search preferences, supplied by the profile service."""
    desired_titles: List[str] = field(default_factory=list)
    skills: List[str] = field(default_factory=list)
    salary_min: Optional[float] = None
    salary_max: Optional[float] = None
    desired_locations: List[str] = field(default_factory=list)
    remote: Optional[bool] = None
    experience_level: Optional[ExperienceLevel] = None
    exclude_keywords: List[str] = field(default_factory=list)

    def __post_init__(self):
        if self.experience_level is not None and not isinstance(self.experience_level, ExperienceLevel):
            self.experience_level = ExperienceLevel(str(self.experience_level).upper())


@dataclass
class ScoringWeights:
    """Component weights; they must sum to 1."""
    skill_match: float = 0.35
    salary_fit: float = 0.20
    location_fit: float = 0.20
    experience_fit: float = 0.15
    recency: float = 0.10

    def __post_init__(self):
        total = sum(self.as_dict().values())
        if abs(total - 1.0) > 1e-6:
            raise ValueError(f"Scoring weights must sum to 1, got {total:.3f}")

    def as_dict(self) -> Dict[str, float]:
        return {
            'skill_match': self.skill_match,
            'salary_fit': self.salary_fit,
            'location_fit': self.location_fit,
            'experience_fit': self.experience_fit,
            'recency': self.recency,
        }


@dataclass
class ScoreBreakdown:
    """Relevance of one job for one user.

    Attributes:
        total: Score between 0 and 100
        components: Weighted points per component, summing to ``total`` unless an
            excluded keyword zeroed it
        partial: True when the breakdown is a fallback rather than a full evaluation
    """
    job_id: str
    total: float
    components: Dict[str, float]
    recommended: bool
    evaluated_at: datetime
    partial: bool = False
    explanation: List[str] = field(default_factory=list)
    matched_skills: List[str] = field(default_factory=list)
    missing_skills: List[str] = field(default_factory=list)
    excluded_keyword: Optional[str] = None

    @classmethod
    def neutral(cls, job_id: str, weights: Optional[ScoringWeights] = None,
                now: Optional[datetime] = None) -> "ScoreBreakdown":
        """Placeholder used when a score could not be computed in time."""
        weights = weights or ScoringWeights()
        components = {name: round(w * 100 * NEUTRAL, 2) for name, w in weights.as_dict().items()}
        return cls(
            job_id=job_id,
            total=round(sum(components.values()), 2),
            components=components,
            recommended=False,
            evaluated_at=now or utcnow(),
            partial=True,
            explanation=['Score not yet available'],
        )


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def location_matches(desired: str, job: CanonicalJob) -> bool:
    """Check whether a desired location string covers the job's location.

    Args:
        desired: e.g. "Austin, TX", "TX", "US" or "Remote"
        job: Job to check
    """
    wanted = desired.strip().lower()
    if not wanted:
        return False
    location = job.location
    if wanted in REMOTE_LOCATION_WORDS:
        return job.remote_option == RemoteOption.REMOTE or location.country == WORLDWIDE

    parsed = parse_location(desired)
    if parsed is not None and parsed.country != WORLDWIDE:
        if parsed.country.lower() != (location.country or '').lower():
            return False
        if parsed.state and parsed.state.lower() != (location.state or '').lower():
            return False
        if parsed.city and parsed.city.lower() != (location.city or '').lower():
            return False
        return True
    return wanted in {p.lower() for p in (location.city, location.state, location.country) if p}


class RelevanceScorer:
    """Deterministic weighted relevance scoring.

    ``score`` is a pure function of the job, the criteria and ``now``; two
    calls with the same inputs return identical breakdowns.
    """

    def __init__(self, weights: Optional[ScoringWeights] = None, recency_half_life_days: float = 14,
                 recommended_threshold: float = 70):
        self.weights = weights or ScoringWeights()
        self.recency_half_life_days = recency_half_life_days
        self.recommended_threshold = recommended_threshold

    def skill_match(self, job: CanonicalJob, criteria: UserSearchCriteria):
        """Share of the job's required skills the user has.

        Returns:
            (fit, matched skills, missing skills)
        """
        if not job.required_skills:
            return NEUTRAL, [], []
        user_skills = {s.strip().lower() for s in criteria.skills}
        matched = [s for s in job.required_skills if s.lower() in user_skills]
        missing = [s for s in job.required_skills if s.lower() not in user_skills]
        return len(matched) / len(job.required_skills), matched, missing

    def salary_fit(self, job: CanonicalJob, criteria: UserSearchCriteria) -> float:
        """Share of the user's range covered up to the job's ceiling."""
        if job.salary is None or not job.salary.is_known:
            return NEUTRAL
        if criteria.salary_min is None and criteria.salary_max is None:
            return NEUTRAL

        job_low, job_high = job.salary.bounds
        user_min = criteria.salary_min if criteria.salary_min is not None else 0.0
        user_max = criteria.salary_max

        if user_max is None or user_max <= user_min:
            return 1.0 if job_high >= user_min else 0.0
        if job_low >= user_max:
            return 1.0
        return _clamp((min(job_high, user_max) - user_min) / (user_max - user_min))

    def location_fit(self, job: CanonicalJob, criteria: UserSearchCriteria) -> float:
        if criteria.desired_locations and any(location_matches(d, job) for d in criteria.desired_locations):
            return 1.0
        if criteria.remote:
            return REMOTE_FIT.get(job.remote_option, 0.0)
        if not criteria.desired_locations:
            if criteria.remote is False and job.remote_option == RemoteOption.REMOTE:
                return 0.0
            return NEUTRAL
        return 0.0

    def experience_fit(self, job: CanonicalJob, criteria: UserSearchCriteria) -> float:
        if job.experience_level is None or criteria.experience_level is None:
            return NEUTRAL
        distance = abs(job.experience_level.ordinal - criteria.experience_level.ordinal)
        return _clamp(1.0 - distance / MAX_LEVEL_DISTANCE)

    def recency(self, job: CanonicalJob, now: datetime) -> float:
        age_days = max(0.0, (now - job.posted_at).total_seconds() / 86400)
        return 0.5 ** (age_days / self.recency_half_life_days)

    def excluded_keyword(self, job: CanonicalJob, criteria: UserSearchCriteria) -> Optional[str]:
        text = f"{job.title} {job.description}".lower()
        for keyword in criteria.exclude_keywords:
            if keyword.strip() and re.search(rf'\b{re.escape(keyword.strip().lower())}\b', text):
                return keyword
        return None

    def score(self, job: CanonicalJob, criteria: UserSearchCriteria,
              now: Optional[datetime] = None) -> ScoreBreakdown:
        """Score a job for a user.

        Args:
            job: Active, canonical job
            criteria: User's search criteria
            now: Reference time for recency, defaults to the current UTC time

        Returns:
            ScoreBreakdown with weighted component points (0-100 overall)
        """
        now = now or utcnow()
        skill, matched, missing = self.skill_match(job, criteria)
        fits = {
            'skill_match': skill,
            'salary_fit': self.salary_fit(job, criteria),
            'location_fit': self.location_fit(job, criteria),
            'experience_fit': self.experience_fit(job, criteria),
            'recency': self.recency(job, now),
        }
        weights = self.weights.as_dict()
        components = {name: round(fits[name] * weights[name] * 100, 2) for name in weights}
        total = round(_clamp(sum(components.values()), 0.0, 100.0), 2)

        explanation = self._explain(job, criteria, fits, matched, missing)
        excluded = self.excluded_keyword(job, criteria)
        if excluded:
            total = 0.0
            explanation.insert(0, f"Contains excluded keyword: {excluded}")
            logger.debug(f"Job {job.id} zeroed by excluded keyword '{excluded}'")

        return ScoreBreakdown(
            job_id=job.id,
            total=total,
            components=components,
            recommended=total >= self.recommended_threshold,
            evaluated_at=now,
            explanation=explanation,
            matched_skills=matched,
            missing_skills=missing,
            excluded_keyword=excluded,
        )

    def _explain(self, job, criteria, fits, matched, missing) -> List[str]:
        lines = []
        if criteria.desired_titles:
            wanted = {normalize_title(t) for t in criteria.desired_titles}
            if job.normalized_title in wanted:
                lines.append('Title matches your desired roles')
        if fits['skill_match'] >= 0.8 and matched:
            lines.append(f"Your skills strongly match the requirements: {', '.join(matched)}")
        elif missing:
            lines.append(f"Missing skills: {', '.join(missing)}")
        if fits['salary_fit'] >= 0.8 and job.salary is not None:
            lines.append('Salary range meets your expectations')
        elif fits['salary_fit'] < 0.3:
            lines.append('Salary may not meet your requirements')
        if fits['location_fit'] >= 1.0:
            lines.append('Location matches your preferences')
        elif fits['location_fit'] == 0.0:
            lines.append('Location does not match your preferences')
        if fits['experience_fit'] >= 1.0:
            lines.append('Experience level match')
        elif fits['experience_fit'] < 0.6 and job.experience_level and criteria.experience_level:
            lines.append('Experience level mismatch')
        if fits['recency'] >= 0.8:
            lines.append('Recently posted')
        elif fits['recency'] < 0.25:
            lines.append('Older posting')
        return lines
