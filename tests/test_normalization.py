"""Tests for raw posting normalization."""
from datetime import datetime, timedelta

import pytest

from jobcatalog.domain.job import (
    ExperienceLevel,
    JobSource,
    JobState,
    JobType,
    RawPosting,
    RemoteOption,
    SalaryPeriod,
)
from jobcatalog.domain.normalization import (
    WORLDWIDE,
    build_salary,
    compute_quality_score,
    extract_skills,
    normalize_title,
    parse_datetime,
    parse_location,
    parse_salary_text,
    summarize,
)
from jobcatalog.error_handling import ValidationError


@pytest.mark.parametrize("title,expected", [
    ("Senior Backend Engineer", "backend engineer"),
    ("Sr. Backend Engineer", "backend engineer"),
    ("Backend Eng.", "backend engineer"),
    ("Lead Software Dev (Remote)", "software developer remote"),
    ("Staff Engineer II", "engineer"),
    ("QA Analyst", "quality assurance analyst"),
])
def test_normalize_title(title, expected):
    assert normalize_title(title) == expected


def test_summarize_bounds_length_on_word_boundary():
    text = "<p>" + "word " * 100 + "</p>"
    summary = summarize(text)
    assert summary.endswith("...")
    assert len(summary) <= 203
    assert "<p>" not in summary
    assert not summary[:-3].endswith(" ")


def test_summarize_short_text_is_unchanged():
    assert summarize("<b>Short</b>   and sweet") == "Short and sweet"


@pytest.mark.parametrize("raw,country,state,city", [
    ("Austin, TX", "US", "TX", "Austin"),
    ("Austin, Texas", "US", "TX", "Austin"),
    ("Berlin, Germany", "DE", None, "Berlin"),
    ("Remote", WORLDWIDE, None, None),
    ("Remote - US", WORLDWIDE, None, None),
    ({"city": "Denver", "state": "CO", "country": "us"}, "US", "CO", "Denver"),
])
def test_parse_location(raw, country, state, city):
    location = parse_location(raw)
    assert location.country == country
    assert location.state == state
    assert location.city == city


@pytest.mark.parametrize("raw", [None, "", "Somewhere", {"city": "Austin"}])
def test_parse_location_without_country(raw):
    assert parse_location(raw) is None


def test_parse_salary_text():
    assert parse_salary_text("$120,000 - $160,000") == (120000.0, 160000.0, "YEARLY")
    assert parse_salary_text("100k-150k") == (100000.0, 150000.0, "YEARLY")
    assert parse_salary_text("$45/hour") == (45.0, None, "HOURLY")
    assert parse_salary_text("competitive") == (None, None, None)


def test_build_salary_annualizes_hourly_and_monthly():
    hourly = build_salary(40, 50, "HOURLY", None)
    assert hourly.min == 40 * 2080
    assert hourly.max == 50 * 2080
    assert hourly.period == SalaryPeriod.HOURLY

    monthly = build_salary(None, None, None, "$8,000 per month")
    assert monthly.min == 96000
    assert monthly.period == SalaryPeriod.MONTHLY


def test_build_salary_swaps_inverted_range_and_ignores_zero():
    salary = build_salary(160000, 120000, None, None)
    assert (salary.min, salary.max) == (120000, 160000)
    assert build_salary(0, 0, None, None) is None


def test_parse_datetime_forms():
    expected = datetime(2024, 3, 1, 0, 0, 0)
    assert parse_datetime(1709251200) == expected
    assert parse_datetime("2024-03-01T00:00:00Z") == expected
    assert parse_datetime("2024-03-01T02:00:00+02:00") == expected
    assert parse_datetime("not a date") is None
    assert parse_datetime(None) is None


def test_extract_skills_from_text():
    skills = extract_skills("<li>We use Python, Docker and PostgreSQL every day</li>")
    assert skills == ["Python", "Docker", "PostgreSQL"]


class TestJobNormalizer:
    """Test normalization of raw postings into canonical jobs."""

    def test_generic_posting(self, normalizer, make_posting, now):
        job = normalizer.normalize(make_posting("42", salary_min=120000, salary_max=160000))

        assert job.id == "INDEED_42"
        assert job.source == JobSource.INDEED
        assert job.normalized_title == "backend engineer"
        assert job.location.key() == "austin|tx|us"
        assert job.experience_level == ExperienceLevel.SENIOR
        assert job.job_type == JobType.FULL_TIME
        assert job.required_skills == ["Python", "SQL", "AWS"]
        assert job.salary.min == 120000
        assert job.state == JobState.ACTIVE
        assert job.metadata.first_seen_at == now
        assert job.metadata.check_count == 1
        assert job.posted_at == now

    def test_remoteok_posting(self, normalizer, now):
        raw = RawPosting(JobSource.REMOTEOK, "1", {
            'id': '1',
            'position': 'Senior Backend Engineer',
            'company': 'Acme Corp',
            'location': 'Austin, TX',
            'apply_url': 'https://remoteok.com/l/1',
            'description': '<p>Python and SQL</p>',
            'tags': ['python', 'sql', 'contract'],
            'salary_min': 0,
            'epoch': 1709251200,
        }, fetched_at=now)
        job = normalizer.normalize(raw)

        assert job.remote_option == RemoteOption.REMOTE
        assert job.job_type == JobType.CONTRACT
        assert job.salary is None
        assert job.description == "Python and SQL"
        assert job.posted_at == datetime(2024, 3, 1)

    def test_the_muse_posting(self, normalizer, now):
        raw = RawPosting(JobSource.THE_MUSE, "88", {
            'id': 88,
            'name': 'Backend Engineer',
            'company': {'name': 'Acme Corp'},
            'locations': [{'name': 'Flexible / Remote'}],
            'refs': {'landing_page': 'https://www.themuse.com/jobs/acme/88'},
            'contents': '<p>Work with Kubernetes and Golang.</p>',
            'levels': [{'name': 'Mid Level', 'short_name': 'mid'}],
            'categories': [{'name': 'Software Engineering'}],
            'publication_date': '2024-02-28T10:00:00Z',
        }, fetched_at=now)
        job = normalizer.normalize(raw)

        assert job.location.country == WORLDWIDE
        assert job.remote_option == RemoteOption.REMOTE
        assert job.experience_level == ExperienceLevel.MID
        assert job.required_skills == ["Golang", "Kubernetes"]
        assert job.categories == ["Software Engineering"]

    def test_usajobs_posting(self, normalizer, now):
        raw = RawPosting(JobSource.USAJOBS, "X-1", {
            'MatchedObjectId': 'X-1',
            'PositionTitle': 'IT Specialist',
            'OrganizationName': 'Department of Energy',
            'PositionURI': 'https://www.usajobs.gov/job/1',
            'ApplyURI': ['https://www.usajobs.gov/apply/1'],
            'PositionLocation': [{
                'LocationName': 'Denver, Colorado',
                'CountryCode': 'US',
                'CountrySubDivisionCode': 'CO',
                'CityName': 'Denver',
            }],
            'PositionRemuneration': [{'MinimumRange': '40', 'MaximumRange': '50', 'RateIntervalCode': 'PH'}],
            'PositionSchedule': [{'Name': 'Part-Time'}],
            'PublicationStartDate': '2024-02-20',
            'ApplicationCloseDate': '2024-04-01',
            'UserArea': {'Details': {'JobSummary': 'Support Linux servers.'}},
        }, fetched_at=now)
        job = normalizer.normalize(raw)

        assert job.company == 'Department of Energy'
        assert job.application_url == 'https://www.usajobs.gov/apply/1'
        assert job.location.key() == 'denver|co|us'
        assert job.job_type == JobType.PART_TIME
        assert job.salary.min == 40 * 2080
        assert job.expires_at == datetime(2024, 4, 1)

    @pytest.mark.parametrize("override,missing", [
        ({'title': ''}, ['title']),
        ({'company': None}, ['company']),
        ({'location': 'Somewhere'}, ['country']),
        ({'url': ''}, ['application_url']),
        ({'title': '', 'url': None}, ['title', 'application_url']),
    ])
    def test_missing_required_fields_rejected(self, normalizer, make_posting, override, missing):
        with pytest.raises(ValidationError) as exc_info:
            normalizer.normalize(make_posting("7", **override))
        assert exc_info.value.missing == missing
        assert exc_info.value.source == "INDEED"
        assert exc_info.value.external_id == "7"

    def test_non_dict_payload_rejected(self, normalizer, now):
        raw = RawPosting(JobSource.INDEED, "9", ["not", "a", "dict"], fetched_at=now)
        with pytest.raises(ValidationError):
            normalizer.normalize(raw)

    @pytest.mark.parametrize("source,payload", [
        (JobSource.INDEED, {'title': 12345, 'company': 'Acme Corp', 'location': 'Austin, TX',
                            'url': 'https://jobs.example.com/1'}),
        (JobSource.THE_MUSE, {'name': 'Engineer', 'company': {'name': 'Acme'}, 'locations': ['Austin, TX']}),
        (JobSource.ADZUNA, {'title': 'Engineer', 'location': 'London'}),
        (JobSource.REMOTEOK, {'position': 'Engineer', 'company': 'Acme', 'tags': ['python', 42]}),
    ])
    def test_wrongly_typed_payload_rejected(self, normalizer, now, source, payload):
        raw = RawPosting(source, "13", payload, fetched_at=now)
        with pytest.raises(ValidationError) as exc_info:
            normalizer.normalize(raw)
        assert "malformed payload" in exc_info.value.reason

    def test_posted_at_defaults_to_fetched_at(self, normalizer, make_posting, now):
        job = normalizer.normalize(make_posting("3", posted_at=None))
        assert job.posted_at == now

    def test_skills_extracted_when_no_tags(self, normalizer, make_posting):
        job = normalizer.normalize(make_posting("4", skills=[], description="Experience with React and CSS"))
        assert job.required_skills == ["React", "CSS"]

    def test_preferred_skills_exclude_required(self, normalizer, make_posting):
        job = normalizer.normalize(make_posting("5", preferred_skills=['aws', 'Docker']))
        assert job.preferred_skills == ['Docker']


class TestQualityScore:
    """Test the completeness heuristic."""

    def test_quality_score_components(self, normalizer, make_posting, now):
        base = normalizer.normalize(make_posting("1"))
        assert base.quality_score == 60

        rich = normalizer.normalize(make_posting(
            "2",
            description="x " * 600,
            salary_min=100000,
            expires_at=(now + timedelta(days=30)).isoformat(),
        ))
        assert rich.quality_score == 100

        bare = normalizer.normalize(make_posting("3", skills=[], description="Nothing to see"))
        assert bare.quality_score == 40

    def test_quality_score_is_clamped(self, normalizer, make_posting):
        job = normalizer.normalize(make_posting("1"))
        job.description = "y " * 2000
        job.expires_at = datetime(2030, 1, 1)
        job.salary = build_salary(1, 2, None, None)
        assert 0 <= compute_quality_score(job) <= 100
