"""Catalog store: durable keyed storage for canonical jobs."""
import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterator, List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    Integer,
    String,
    Text,
    create_engine,
    func,
)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from jobcatalog.domain.job import (
    CanonicalJob,
    ExperienceLevel,
    JobMetadata,
    JobSource,
    JobState,
    JobType,
    Location,
    RemoteOption,
    Salary,
    SalaryPeriod,
    utcnow,
)
from jobcatalog.error_handling import DuplicateRaceError, StoreError

logger = logging.getLogger(__name__)

Base = declarative_base()

SCORABLE_STATES = (JobState.ACTIVE.value,)
LIVE_STATES = (JobState.NEW.value, JobState.ACTIVE.value, JobState.STALE.value)


class JobModel(Base):
    """SQLAlchemy model for canonical jobs, keyed by ``{source}_{external_id}`` of first sighting."""
    __tablename__ = 'jobs'

    id = Column(String(255), primary_key=True)
    source = Column(String(50), nullable=False, index=True)
    external_id = Column(String(255), nullable=False)
    title = Column(String(512), nullable=False)
    normalized_title = Column(String(512), nullable=False, index=True)
    company = Column(String(255), nullable=False)
    company_key = Column(String(255), nullable=False, index=True)
    city = Column(String(255), nullable=True)
    state_code = Column(String(255), nullable=True)
    country = Column(String(64), nullable=False)
    location_raw = Column(String(512), nullable=True)
    remote_option = Column(String(20), nullable=False)
    job_type = Column(String(20), nullable=False)
    experience_level = Column(String(20), nullable=True)
    salary_min = Column(Float, nullable=True)
    salary_max = Column(Float, nullable=True)
    salary_currency = Column(String(8), nullable=True)
    salary_period = Column(String(10), nullable=True)
    description = Column(Text, nullable=True)
    summary = Column(Text, nullable=True)
    application_url = Column(String(2048), nullable=False)
    required_skills = Column(JSON, nullable=True)
    preferred_skills = Column(JSON, nullable=True)
    categories = Column(JSON, nullable=True)
    posted_at = Column(DateTime, nullable=False, index=True)
    updated_at = Column(DateTime, nullable=True)
    expires_at = Column(DateTime, nullable=True, index=True)
    is_active = Column(Boolean, default=True, index=True)
    state = Column(String(20), nullable=False, index=True)
    deduplication_hash = Column(String(64), nullable=False, index=True)
    quality_score = Column(Float, default=0.0)
    first_seen_at = Column(DateTime, nullable=False, index=True)
    last_checked_at = Column(DateTime, nullable=False)
    check_count = Column(Integer, default=1)
    is_duplicate = Column(Boolean, default=False, index=True)
    parent_job_id = Column(String(255), nullable=True, index=True)


class DedupIndexModel(Base):
    """Hash index: one row per fingerprint, the primary key makes claims atomic."""
    __tablename__ = 'dedup_index'

    dedup_hash = Column(String(64), primary_key=True)
    job_id = Column(String(255), nullable=False, index=True)
    claimed_at = Column(DateTime, default=utcnow)


class RedirectModel(Base):
    """Redirects from demoted job ids to the surviving canonical id."""
    __tablename__ = 'job_redirects'

    old_id = Column(String(255), primary_key=True)
    new_id = Column(String(255), nullable=False, index=True)
    created_at = Column(DateTime, default=utcnow)


def _to_domain(model: JobModel) -> CanonicalJob:
    salary = None
    if model.salary_min is not None or model.salary_max is not None:
        salary = Salary(
            min=model.salary_min,
            max=model.salary_max,
            currency=model.salary_currency or 'USD',
            period=SalaryPeriod(model.salary_period or 'YEARLY'),
        )
    return CanonicalJob(
        id=model.id,
        source=JobSource(model.source),
        external_id=model.external_id,
        title=model.title,
        normalized_title=model.normalized_title,
        company=model.company,
        location=Location(
            country=model.country,
            city=model.city,
            state=model.state_code,
            raw=model.location_raw,
        ),
        application_url=model.application_url,
        posted_at=model.posted_at,
        updated_at=model.updated_at,
        expires_at=model.expires_at,
        metadata=JobMetadata(
            first_seen_at=model.first_seen_at,
            last_checked_at=model.last_checked_at,
            check_count=model.check_count or 1,
            is_duplicate=bool(model.is_duplicate),
            parent_job_id=model.parent_job_id,
        ),
        remote_option=RemoteOption(model.remote_option),
        job_type=JobType(model.job_type),
        experience_level=ExperienceLevel(model.experience_level) if model.experience_level else None,
        salary=salary,
        description=model.description or '',
        summary=model.summary or '',
        required_skills=list(model.required_skills or []),
        preferred_skills=list(model.preferred_skills or []),
        categories=list(model.categories or []),
        is_active=bool(model.is_active),
        state=JobState(model.state),
        deduplication_hash=model.deduplication_hash,
        quality_score=model.quality_score or 0.0,
    )


def _apply(job: CanonicalJob, model: JobModel) -> JobModel:
    model.id = job.id
    model.source = job.source.value
    model.external_id = job.external_id
    model.title = job.title
    model.normalized_title = job.normalized_title
    model.company = job.company
    model.company_key = job.company_key
    model.city = job.location.city
    model.state_code = job.location.state
    model.country = job.location.country
    model.location_raw = job.location.raw
    model.remote_option = job.remote_option.value
    model.job_type = job.job_type.value
    model.experience_level = job.experience_level.value if job.experience_level else None
    model.salary_min = job.salary.min if job.salary else None
    model.salary_max = job.salary.max if job.salary else None
    model.salary_currency = job.salary.currency if job.salary else None
    model.salary_period = job.salary.period.value if job.salary else None
    model.description = job.description
    model.summary = job.summary
    model.application_url = job.application_url
    model.required_skills = list(job.required_skills)
    model.preferred_skills = list(job.preferred_skills)
    model.categories = list(job.categories)
    model.posted_at = job.posted_at
    model.updated_at = job.updated_at
    model.expires_at = job.expires_at
    model.is_active = job.is_active
    model.state = job.state.value
    model.deduplication_hash = job.deduplication_hash
    model.quality_score = job.quality_score
    model.first_seen_at = job.metadata.first_seen_at
    model.last_checked_at = job.metadata.last_checked_at
    model.check_count = job.metadata.check_count
    model.is_duplicate = job.metadata.is_duplicate
    model.parent_job_id = job.metadata.parent_job_id
    return model


class CatalogStore:
    """Catalog store backed by SQLAlchemy.

    Every mutating operation runs in its own transaction. SQLite allows a
    single writer, so sessions against it are serialized with a lock.
    """

    def __init__(self, db_url: str = "sqlite:///jobs.db", echo: bool = False):
        """Initialize database connection.

        Args:
            db_url: Database connection URL
            echo: Log emitted SQL
        """
        self.db_url = db_url
        self._is_sqlite = db_url.startswith('sqlite')
        engine_kwargs = {'echo': echo}
        if self._is_sqlite:
            engine_kwargs['connect_args'] = {'check_same_thread': False}
            if ':memory:' in db_url or db_url in ('sqlite://', 'sqlite:///'):
                engine_kwargs['poolclass'] = StaticPool
        self.engine = create_engine(db_url, **engine_kwargs)
        self.Session = sessionmaker(bind=self.engine, expire_on_commit=False)
        self._lock = threading.RLock()
        self._create_tables()

    def _create_tables(self) -> None:
        """Create database tables if they don't exist."""
        Base.metadata.create_all(self.engine)

    @contextmanager
    def _session(self) -> Iterator[Session]:
        if self._is_sqlite:
            with self._lock:
                with self.Session() as session:
                    yield session
        else:
            with self.Session() as session:
                yield session

    def close(self) -> None:
        self.engine.dispose()

    # Writes

    def upsert(self, job: CanonicalJob) -> bool:
        """Insert or update a canonical job.

        Args:
            job: Job to store

        Returns:
            True if a new row was created, False if an existing row was updated
        """
        try:
            with self._session() as session:
                model = session.get(JobModel, job.id)
                created = model is None
                if created:
                    model = JobModel()
                    session.add(model)
                _apply(job, model)
                session.commit()
                return created
        except SQLAlchemyError as e:
            logger.error(f"Error upserting job {job.id}: {str(e)}")
            raise StoreError(f"upsert failed for {job.id}") from e

    def insert_claiming_hash(self, job: CanonicalJob) -> None:
        """Insert a brand-new job and claim its hash in one transaction.

        Raises:
            DuplicateRaceError: If the hash or the id was claimed concurrently
        """
        try:
            with self._session() as session:
                session.add(DedupIndexModel(dedup_hash=job.deduplication_hash, job_id=job.id))
                session.add(_apply(job, JobModel()))
                try:
                    session.commit()
                except IntegrityError:
                    session.rollback()
                    holder = session.get(DedupIndexModel, job.deduplication_hash)
                    raise DuplicateRaceError(
                        job.deduplication_hash, job.id, holder.job_id if holder else None
                    ) from None
        except SQLAlchemyError as e:
            logger.error(f"Error inserting job {job.id}: {str(e)}")
            raise StoreError(f"insert failed for {job.id}") from e

    def claim_hash(self, dedup_hash: str, job_id: str) -> bool:
        """Point a hash at a job if it is unclaimed.

        Returns:
            True if claimed (or already held by ``job_id``), False if held by another job
        """
        try:
            with self._session() as session:
                existing = session.get(DedupIndexModel, dedup_hash)
                if existing is not None:
                    return existing.job_id == job_id
                session.add(DedupIndexModel(dedup_hash=dedup_hash, job_id=job_id))
                try:
                    session.commit()
                except IntegrityError:
                    session.rollback()
                    return False
                return True
        except SQLAlchemyError as e:
            raise StoreError(f"claim failed for {job_id}") from e

    def move_hash(self, dedup_hash: str, job_id: str) -> None:
        """Point an already claimed hash at another job."""
        try:
            with self._session() as session:
                entry = session.get(DedupIndexModel, dedup_hash)
                if entry is None:
                    session.add(DedupIndexModel(dedup_hash=dedup_hash, job_id=job_id))
                else:
                    entry.job_id = job_id
                    entry.claimed_at = utcnow()
                session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Error moving hash {dedup_hash[:12]} to {job_id}: {str(e)}")
            raise StoreError(f"move_hash failed for {job_id}") from e

    def mark_duplicate(self, child_id: str, parent_id: str) -> List[str]:
        """Link ``child_id`` to ``parent_id`` as a duplicate.

        The parent is resolved to its own canonical record first, and any
        duplicates of the child are re-pointed at it, so no link is ever
        longer than one hop.

        Returns:
            Ids of the child's former duplicates that were re-pointed
        """
        try:
            with self._session() as session:
                parent = session.get(JobModel, parent_id)
                if parent is None:
                    raise StoreError(f"parent job {parent_id} not found")
                if parent.is_duplicate and parent.parent_job_id:
                    parent = session.get(JobModel, parent.parent_job_id)
                child = session.get(JobModel, child_id)
                if child is None:
                    raise StoreError(f"job {child_id} not found")
                if child.id == parent.id:
                    return []

                child.is_duplicate = True
                child.parent_job_id = parent.id
                child.state = JobState.DUPLICATE.value
                child.is_active = False

                repointed = []
                for orphan in session.query(JobModel).filter(JobModel.parent_job_id == child.id).all():
                    orphan.parent_job_id = parent.id
                    repointed.append(orphan.id)
                session.commit()
                return repointed
        except SQLAlchemyError as e:
            logger.error(f"Error linking {child_id} to {parent_id}: {str(e)}")
            raise StoreError(f"mark_duplicate failed for {child_id}") from e

    def mark_expired(self, job_id: str) -> bool:
        return self.set_state(job_id, JobState.EXPIRED, is_active=False)

    def set_state(self, job_id: str, state: JobState, is_active: Optional[bool] = None) -> bool:
        """Persist a lifecycle state.

        Returns:
            True if the job exists
        """
        try:
            with self._session() as session:
                model = session.get(JobModel, job_id)
                if model is None:
                    return False
                model.state = state.value
                if is_active is not None:
                    model.is_active = is_active
                session.commit()
                return True
        except SQLAlchemyError as e:
            raise StoreError(f"set_state failed for {job_id}") from e

    def redirect(self, old_id: str, new_id: str) -> None:
        """Record that references to ``old_id`` must now resolve to ``new_id``.

        Existing redirects pointing at ``old_id`` are moved along so lookups
        never chain.
        """
        if old_id == new_id:
            return
        try:
            with self._session() as session:
                for row in session.query(RedirectModel).filter(RedirectModel.new_id == old_id).all():
                    row.new_id = new_id
                existing = session.get(RedirectModel, old_id)
                if existing is None:
                    session.add(RedirectModel(old_id=old_id, new_id=new_id))
                else:
                    existing.new_id = new_id
                stale = session.get(RedirectModel, new_id)
                if stale is not None:
                    session.delete(stale)
                session.commit()
        except SQLAlchemyError as e:
            raise StoreError(f"redirect failed for {old_id}") from e

    # Reads

    def resolve(self, job_id: str) -> str:
        """Follow the redirect contract to the surviving canonical id."""
        with self._session() as session:
            row = session.get(RedirectModel, job_id)
            return row.new_id if row else job_id

    def redirects(self) -> Dict[str, str]:
        with self._session() as session:
            return {row.old_id: row.new_id for row in session.query(RedirectModel).all()}

    def get(self, job_id: str) -> Optional[CanonicalJob]:
        try:
            with self._session() as session:
                model = session.get(JobModel, job_id)
                return _to_domain(model) if model else None
        except SQLAlchemyError as e:
            logger.error(f"Error getting job {job_id}: {str(e)}")
            raise StoreError(f"get failed for {job_id}") from e

    def find_by_hash(self, dedup_hash: str) -> Optional[CanonicalJob]:
        """O(1) exact-duplicate lookup through the hash index."""
        with self._session() as session:
            entry = session.get(DedupIndexModel, dedup_hash)
            if entry is None:
                return None
            model = session.get(JobModel, entry.job_id)
            return _to_domain(model) if model else None

    def find_candidates(self, company_key: str, exclude_id: Optional[str] = None) -> List[CanonicalJob]:
        """Canonical, non-expired jobs from the same company."""
        with self._session() as session:
            query = session.query(JobModel).filter(
                JobModel.company_key == company_key,
                JobModel.is_duplicate.is_(False),
                JobModel.state != JobState.EXPIRED.value,
            )
            if exclude_id:
                query = query.filter(JobModel.id != exclude_id)
            return [_to_domain(m) for m in query.order_by(JobModel.first_seen_at, JobModel.id).all()]

    def canonical_jobs(self) -> List[CanonicalJob]:
        """Every canonical, non-expired job, grouped by company."""
        with self._session() as session:
            query = session.query(JobModel).filter(
                JobModel.is_duplicate.is_(False),
                JobModel.state != JobState.EXPIRED.value,
            ).order_by(JobModel.company_key, JobModel.first_seen_at, JobModel.id)
            return [_to_domain(m) for m in query.all()]

    def duplicates_of(self, parent_id: str) -> List[CanonicalJob]:
        with self._session() as session:
            query = session.query(JobModel).filter(JobModel.parent_job_id == parent_id)
            return [_to_domain(m) for m in query.order_by(JobModel.id).all()]

    def active_jobs(self, limit: Optional[int] = None, offset: int = 0) -> List[CanonicalJob]:
        """Scorable jobs: active, canonical and not expired, newest first."""
        with self._session() as session:
            query = session.query(JobModel).filter(
                JobModel.is_active.is_(True),
                JobModel.is_duplicate.is_(False),
                JobModel.state.in_(SCORABLE_STATES),
            ).order_by(JobModel.posted_at.desc(), JobModel.id)
            if offset:
                query = query.offset(offset)
            if limit is not None:
                query = query.limit(limit)
            return [_to_domain(m) for m in query.all()]

    def iter_active(self, chunk_size: int = 500) -> Iterator[List[CanonicalJob]]:
        """Yield the scorable catalog in chunks."""
        offset = 0
        while True:
            chunk = self.active_jobs(limit=chunk_size, offset=offset)
            if not chunk:
                return
            yield chunk
            offset += len(chunk)

    def lifecycle_candidates(self, source: Optional[JobSource] = None) -> List[CanonicalJob]:
        """Jobs whose lifecycle can still advance (not expired, not duplicate)."""
        with self._session() as session:
            query = session.query(JobModel).filter(
                JobModel.is_duplicate.is_(False),
                JobModel.state.in_(LIVE_STATES),
            )
            if source is not None:
                query = query.filter(JobModel.source == source.value)
            return [_to_domain(m) for m in query.order_by(JobModel.id).all()]

    def count_by_state(self) -> Dict[str, int]:
        with self._session() as session:
            rows = session.query(JobModel.state, func.count(JobModel.id)).group_by(JobModel.state).all()
            return {state: count for state, count in rows}

    def count_jobs(self) -> int:
        with self._session() as session:
            return session.query(func.count(JobModel.id)).scalar() or 0

    def last_checked_before(self, cutoff: datetime) -> List[str]:
        with self._session() as session:
            rows = session.query(JobModel.id).filter(
                JobModel.last_checked_at < cutoff,
                JobModel.state == JobState.ACTIVE.value,
            ).all()
            return [r[0] for r in rows]
