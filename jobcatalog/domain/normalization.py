"""Normalization of raw source postings into canonical job records."""
import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple, Union

from bs4 import BeautifulSoup
from dateutil import parser as date_parser

from jobcatalog.domain.job import (
    CanonicalJob,
    ExperienceLevel,
    JobMetadata,
    JobState,
    Location,
    RawPosting,
    Salary,
    SalaryPeriod,
    as_naive_utc,
)
from jobcatalog.domain.sources import SourceRegistry, default_registry
from jobcatalog.error_handling import ValidationError

logger = logging.getLogger(__name__)

SUMMARY_LENGTH = 200

# Common abbreviations and their expansions
TITLE_ABBREVIATIONS = {
    r'\bsr\b\.?': 'senior',
    r'\bjr\b\.?': 'junior',
    r'\bmgr\b\.?': 'manager',
    r'\beng\b\.?': 'engineer',
    r'\bdev\b\.?': 'developer',
    r'\badmin\b\.?': 'administrator',
    r'\bassoc\b\.?': 'associate',
    r'\bspec\b\.?': 'specialist',
    r'\bcoord\b\.?': 'coordinator',
    r'\bsw\b\.?': 'software',
    r'\bqa\b\.?': 'quality assurance',
}

SENIORITY_WORDS = {
    'senior', 'junior', 'lead', 'principal', 'staff', 'associate', 'entry',
    'level', 'mid', 'head', 'chief', 'intern', 'i', 'ii', 'iii', 'iv',
}

TITLE_EXPERIENCE_HINTS = [
    (re.compile(r'\b(chief|vp|vice president|director|head of)\b'), ExperienceLevel.EXECUTIVE),
    (re.compile(r'\b(lead|principal|staff)\b'), ExperienceLevel.LEAD),
    (re.compile(r'\b(senior|sr)\b'), ExperienceLevel.SENIOR),
    (re.compile(r'\b(junior|jr)\b'), ExperienceLevel.JUNIOR),
    (re.compile(r'\b(intern|internship|entry level|graduate)\b'), ExperienceLevel.ENTRY),
]

KNOWN_SKILLS = [
    'JavaScript', 'TypeScript', 'Python', 'Java', 'Golang', 'Rust', 'Ruby', 'PHP',
    'C#', 'C++', 'Scala', 'Kotlin', 'Swift', 'React', 'Node.js', 'Vue', 'Angular',
    'Django', 'Flask', 'FastAPI', 'Spring', 'Rails', 'AWS', 'Azure', 'GCP',
    'Docker', 'Kubernetes', 'Terraform', 'SQL', 'PostgreSQL', 'MySQL', 'MongoDB',
    'Redis', 'Kafka', 'Spark', 'GraphQL', 'REST API', 'Linux', 'Git', 'CI/CD',
    'Machine Learning', 'Data Science', 'HTML', 'CSS',
]

US_STATES = {
    'AL': 'alabama', 'AK': 'alaska', 'AZ': 'arizona', 'AR': 'arkansas', 'CA': 'california',
    'CO': 'colorado', 'CT': 'connecticut', 'DE': 'delaware', 'DC': 'district of columbia',
    'FL': 'florida', 'GA': 'georgia', 'HI': 'hawaii', 'ID': 'idaho', 'IL': 'illinois',
    'IN': 'indiana', 'IA': 'iowa', 'KS': 'kansas', 'KY': 'kentucky', 'LA': 'louisiana',
    'ME': 'maine', 'MD': 'maryland', 'MA': 'massachusetts', 'MI': 'michigan', 'MN': 'minnesota',
    'MS': 'mississippi', 'MO': 'missouri', 'MT': 'montana', 'NE': 'nebraska', 'NV': 'nevada',
    'NH': 'new hampshire', 'NJ': 'new jersey', 'NM': 'new mexico', 'NY': 'new york',
    'NC': 'north carolina', 'ND': 'north dakota', 'OH': 'ohio', 'OK': 'oklahoma', 'OR': 'oregon',
    'PA': 'pennsylvania', 'RI': 'rhode island', 'SC': 'south carolina', 'SD': 'south dakota',
    'TN': 'tennessee', 'TX': 'texas', 'UT': 'utah', 'VT': 'vermont', 'VA': 'virginia',
    'WA': 'washington', 'WV': 'west virginia', 'WI': 'wisconsin', 'WY': 'wyoming',
}
_STATE_BY_NAME = {name: code for code, name in US_STATES.items()}

COUNTRIES = {
    'us': 'US', 'usa': 'US', 'united states': 'US', 'united states of america': 'US',
    'uk': 'GB', 'gb': 'GB', 'united kingdom': 'GB', 'england': 'GB',
    'canada': 'CA', 'germany': 'DE', 'france': 'FR', 'spain': 'ES', 'netherlands': 'NL',
    'ireland': 'IE', 'india': 'IN', 'australia': 'AU', 'brazil': 'BR', 'mexico': 'MX',
    'poland': 'PL', 'portugal': 'PT', 'sweden': 'SE', 'switzerland': 'CH', 'israel': 'IL',
    'singapore': 'SG', 'japan': 'JP',
}

REMOTE_LOCATION_WORDS = {'remote', 'worldwide', 'anywhere', 'global', 'flexible / remote'}
WORLDWIDE = 'WORLDWIDE'

REQUIRED_FIELDS = ('title', 'company', 'country', 'application_url')


def normalize_title(title: str) -> str:
    """Normalize a job title for matching.

    Case-folds, expands common abbreviations, strips punctuation and drops
    seniority words so "Sr. Backend Engineer" and "Backend Engineer" compare
    equal.

    Args:
        title: Original job title

    Returns:
        Normalized title string
    """
    normalized = title.casefold().strip()
    for pattern, replacement in TITLE_ABBREVIATIONS.items():
        normalized = re.sub(pattern, replacement, normalized)
    normalized = re.sub(r'[^\w\s]', ' ', normalized)
    tokens = [t for t in normalized.split() if t not in SENIORITY_WORDS]
    return ' '.join(tokens)


def strip_html(text: str) -> str:
    if not text:
        return ''
    if '<' in text and '>' in text:
        text = BeautifulSoup(text, 'html.parser').get_text(' ')
    return re.sub(r'\s+', ' ', text).strip()


def summarize(description: str, limit: int = SUMMARY_LENGTH) -> str:
    """Bounded plain-text summary, cut on a word boundary."""
    text = strip_html(description)
    if len(text) <= limit:
        return text
    cut = text[:limit].rsplit(' ', 1)[0]
    return cut.rstrip(',.;:') + '...'


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse epoch seconds, ISO strings or free-form dates into naive UTC."""
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        return as_naive_utc(value)
    if isinstance(value, (int, float)):
        return as_naive_utc(datetime.fromtimestamp(value, tz=timezone.utc))
    try:
        return as_naive_utc(date_parser.parse(str(value)))
    except (ValueError, OverflowError) as e:
        logger.debug(f"Unparseable date '{value}': {e}")
        return None


def _to_amount(raw: Any) -> Optional[float]:
    if raw is None or raw == '':
        return None
    if isinstance(raw, (int, float)):
        return float(raw) if raw > 0 else None
    text = str(raw).lower().replace('$', '').replace(',', '').strip()
    multiplier = 1
    if text.endswith('k'):
        text = text[:-1]
        multiplier = 1000
    try:
        value = float(text) * multiplier
    except ValueError:
        return None
    return value if value > 0 else None


def parse_salary_text(text: Optional[str]) -> Tuple[Optional[float], Optional[float], Optional[str]]:
    """Parse strings like "$120,000 - $160,000", "100k-150k" or "$45/hour".

    Returns:
        (min, max, period) with period one of HOURLY, MONTHLY, YEARLY or None
    """
    if not text:
        return None, None, None
    amounts = re.findall(r'\$?\s*(\d[\d,]*(?:\.\d+)?)\s*(k)?', text.lower())
    values = [v for v in (_to_amount(num + (k or '')) for num, k in amounts) if v is not None]
    if not values:
        return None, None, None
    lowered = text.lower()
    if 'hour' in lowered or '/hr' in lowered:
        period = 'HOURLY'
    elif 'month' in lowered:
        period = 'MONTHLY'
    else:
        period = 'YEARLY'
    return values[0], (values[1] if len(values) > 1 else None), period


def build_salary(raw_min: Any, raw_max: Any, period: Optional[str], text: Optional[str]) -> Optional[Salary]:
    """Build an annualized ``Salary`` from structured or free-text source values."""
    low, high = _to_amount(raw_min), _to_amount(raw_max)
    if low is None and high is None and text:
        low, high, text_period = parse_salary_text(text)
        period = period or text_period
    if low is None and high is None:
        return None
    if low is not None and high is not None and low > high:
        low, high = high, low
    period_key = str(period).upper() if period else 'YEARLY'
    salary_period = SalaryPeriod.__members__.get(period_key, SalaryPeriod.YEARLY)
    factor = {SalaryPeriod.HOURLY: 2080, SalaryPeriod.MONTHLY: 12}.get(salary_period, 1)
    return Salary(
        min=low * factor if low is not None else None,
        max=high * factor if high is not None else None,
        period=salary_period,
    )


def parse_location(raw: Union[str, Dict[str, Any], None]) -> Optional[Location]:
    """Split a location into city/state/country.

    Remote-only locations map to the ``WORLDWIDE`` country token. Returns
    None when no country can be determined.
    """
    if not raw:
        return None
    if isinstance(raw, dict):
        country = raw.get('country')
        if not country:
            return None
        return Location(
            country=str(country).strip().upper() if len(str(country).strip()) <= 3 else str(country).strip(),
            city=raw.get('city') or None,
            state=raw.get('state') or None,
            raw=raw.get('raw'),
        )

    text = str(raw).strip()
    if text.lower() in REMOTE_LOCATION_WORDS or text.lower().startswith('remote'):
        return Location(country=WORLDWIDE, raw=text)

    parts = [p.strip() for p in re.split(r'[,;]', text) if p.strip()]
    if not parts:
        return None

    last = parts[-1]
    city = parts[0] if len(parts) > 1 else None
    if last.upper() in US_STATES:
        return Location(country='US', state=last.upper(), city=city, raw=text)
    if last.lower() in _STATE_BY_NAME:
        return Location(country='US', state=_STATE_BY_NAME[last.lower()], city=city, raw=text)
    if last.lower() in COUNTRIES:
        state = None
        if len(parts) > 2:
            middle = parts[-2]
            state = middle.upper() if middle.upper() in US_STATES else middle
        return Location(country=COUNTRIES[last.lower()], state=state, city=city, raw=text)
    if len(parts) > 1:
        # "City, Country" for a country missing from the lookup table
        return Location(country=last, city=city, raw=text)
    return None


def extract_skills(text: str) -> List[str]:
    """Find known skills mentioned in free text."""
    lowered = f" {strip_html(text).lower()} "
    found = []
    for skill in KNOWN_SKILLS:
        pattern = r'(?<![\w+#.])' + re.escape(skill.lower()) + r'(?![\w+#])'
        if re.search(pattern, lowered):
            found.append(skill)
    return found


def infer_experience(title: str) -> Optional[ExperienceLevel]:
    lowered = title.lower()
    for pattern, level in TITLE_EXPERIENCE_HINTS:
        if pattern.search(lowered):
            return level
    return None


def compute_quality_score(job: CanonicalJob) -> float:
    """Completeness heuristic (0-100)."""
    score = 50
    text_length = len(strip_html(job.description))
    if text_length > 500:
        score += 10
    if text_length > 1000:
        score += 10
    if job.salary is not None and job.salary.is_known:
        score += 15
    if job.required_skills:
        score += 10
    else:
        score -= 10
    if job.expires_at:
        score += 5
    return float(min(100, max(0, score)))


def _dedupe_preserving_order(items: List[str]) -> List[str]:
    seen = set()
    result = []
    for item in items:
        key = item.strip().lower()
        if key and key not in seen:
            seen.add(key)
            result.append(item.strip())
    return result


def _text(value: Any, name: str) -> str:
    if value is None:
        return ''
    if not isinstance(value, str):
        raise TypeError(f"{name} must be text, got {type(value).__name__}")
    return value.strip()


class JobNormalizer:
    """Maps raw postings into canonical job records.

    Stateless apart from its mapping registry, so one instance can be shared
    by every ingestion worker.
    """

    def __init__(self, registry: Optional[SourceRegistry] = None):
        self.registry = registry or default_registry()

    def normalize(self, raw: RawPosting) -> CanonicalJob:
        """Normalize a raw posting.

        Args:
            raw: Posting as delivered by a source adapter

        Returns:
            Candidate canonical job in state ACTIVE

        Raises:
            ValidationError: If title, company, location country or application URL is
                missing, or a payload field has the wrong shape
        """
        try:
            mapping = self.registry.get(raw.source)
        except KeyError as e:
            raise ValidationError(raw.source.value, raw.external_id, reason=str(e)) from None

        if not isinstance(raw.payload, dict):
            raise ValidationError(raw.source.value, raw.external_id, reason="payload is not an object")

        try:
            return self._build(raw, mapping)
        except (AttributeError, TypeError, ValueError, KeyError) as e:
            raise ValidationError(
                raw.source.value, raw.external_id, reason=f"malformed payload ({type(e).__name__}: {e})"
            ) from e

    def _build(self, raw: RawPosting, mapping) -> CanonicalJob:
        fields = mapping.extract(raw.payload)
        title = _text(fields.get('title'), 'title')
        company = _text(fields.get('company'), 'company')
        location = parse_location(fields.get('location'))
        application_url = _text(fields.get('application_url'), 'application_url')

        present = {
            'title': title,
            'company': company,
            'country': location.country if location else '',
            'application_url': application_url,
        }
        missing = [name for name in REQUIRED_FIELDS if not present[name]]
        if missing:
            raise ValidationError(raw.source.value, raw.external_id, missing=missing)

        description = fields.get('description') or ''
        skills = _dedupe_preserving_order(fields.get('skills') or extract_skills(description))
        required_keys = {s.lower() for s in skills}
        preferred = [
            s for s in _dedupe_preserving_order(fields.get('preferred_skills') or [])
            if s.lower() not in required_keys
        ]
        posted_at = parse_datetime(fields.get('posted_at')) or raw.fetched_at
        experience = mapping.map_experience(fields.get('experience')) or infer_experience(title)

        job = CanonicalJob(
            id=raw.job_id,
            source=raw.source,
            external_id=raw.external_id,
            title=title,
            normalized_title=normalize_title(title),
            company=company,
            location=location,
            application_url=application_url,
            posted_at=posted_at,
            updated_at=posted_at,
            expires_at=parse_datetime(fields.get('expires_at')),
            metadata=JobMetadata(first_seen_at=raw.fetched_at, last_checked_at=raw.fetched_at),
            remote_option=mapping.map_remote(fields.get('remote')),
            job_type=mapping.map_job_type(fields.get('job_type')),
            experience_level=experience,
            salary=build_salary(
                fields.get('salary_min'),
                fields.get('salary_max'),
                fields.get('salary_period'),
                fields.get('salary_text'),
            ),
            description=strip_html(description),
            summary=summarize(description),
            required_skills=skills,
            preferred_skills=preferred,
            categories=_dedupe_preserving_order(fields.get('categories') or []),
        )
        job.quality_score = compute_quality_score(job)
        job.state = JobState.ACTIVE
        return job
