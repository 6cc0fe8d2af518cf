"""Command-line interface for the job catalog."""
import asyncio
import logging
from dataclasses import asdict
from typing import Optional, Tuple

import click
import yaml
from rich.console import Console
from rich.table import Table

from .config import Config
from .database import CatalogStore
from .domain.deduplication import DeduplicationEngine
from .domain.job import ExperienceLevel, JobSource
from .domain.lifecycle import LifecycleManager
from .domain.matching import UserSearchCriteria
from .error_handling import ErrorHandler
from .ingest.pipeline import FileSourceAdapter, IngestionPipeline
from .metrics import metrics
from .ranking import RankingService

console = Console()
logger = logging.getLogger(__name__)


class Context:
    """Objects shared by every command, built lazily from configuration."""

    def __init__(self, config: Config, db_url: Optional[str] = None):
        self.config = config
        self.db_url = db_url or config.get_database_config()['url']
        self._store = None

    @property
    def store(self) -> CatalogStore:
        if self._store is None:
            self._store = CatalogStore(self.db_url, echo=self.config.get_database_config()['echo'])
        return self._store

    def engine(self) -> DeduplicationEngine:
        return DeduplicationEngine(self.store, **asdict(self.config.dedup_settings()))

    def lifecycle(self) -> LifecycleManager:
        return LifecycleManager(self.store, **asdict(self.config.lifecycle_settings()))


@click.group()
@click.option('--config', 'config_file', type=click.Path(exists=True, dir_okay=False),
              help='YAML configuration file (defaults to pipeline.yml if present)')
@click.option('--env-file', type=click.Path(dir_okay=False), help='.env file to load')
@click.option('--db-url', help='Database URL (overrides DATABASE_URL)')
@click.pass_context
def cli(ctx, config_file: Optional[str], env_file: Optional[str], db_url: Optional[str]):
    """Job catalog - ingestion, deduplication and relevance scoring."""
    config = Config(env_file=env_file, config_file=config_file)
    logging.basicConfig(
        level=str(config.get('LOG_LEVEL', 'INFO')).upper(),
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )
    ctx.obj = Context(config, db_url)


@cli.command()
@click.argument('files', nargs=-1, required=True, type=click.Path(exists=True, dir_okay=False))
@click.option('--source', type=click.Choice([s.value for s in JobSource], case_sensitive=False),
              help='Source of the postings when the file does not name it')
@click.option('--reconcile/--no-reconcile', default=True, help='Scan for near-duplicate collisions afterwards')
@click.pass_obj
def ingest(obj: Context, files: Tuple[str, ...], source: Optional[str], reconcile: bool):
    """Ingest postings from JSON or YAML files, one adapter per file."""
    error_handler = ErrorHandler()
    pipeline = IngestionPipeline(
        obj.engine(),
        lifecycle=obj.lifecycle(),
        error_handler=error_handler,
        reconcile=reconcile,
    )
    adapters = [FileSourceAdapter(path, source=source.upper() if source else None) for path in files]

    with console.status("[cyan]Ingesting postings...[/cyan]"):
        stats = asyncio.run(pipeline.run(adapters))

    table = Table(title="Ingestion Summary")
    table.add_column("Outcome", style="cyan")
    table.add_column("Count", style="green", justify="right")
    for label, value in (
        ("Received", stats.received),
        ("Created", stats.created),
        ("Re-sighted", stats.resighted),
        ("Updated", stats.updated),
        ("Duplicates", stats.duplicates),
        ("Promoted", stats.promoted),
        ("Reconciled", stats.reconciled),
        ("Removed", stats.removed),
        ("Rejected", stats.rejected),
        ("Failed", stats.failed),
    ):
        table.add_row(label, str(value))
    console.print(table)

    adapter_errors = error_handler.total('adapter')
    if adapter_errors:
        console.print(f"[red]{adapter_errors} input file(s) could not be read[/red]")


@cli.command()
@click.pass_obj
def sweep(obj: Context):
    """Mark stale jobs and expire jobs past their deadline or age limit."""
    stats = obj.lifecycle().sweep()
    metrics.record_sweep(stats.stale, stats.expired)
    console.print(
        f"[green]Checked {stats.checked} jobs: {stats.stale} marked stale, {stats.expired} expired[/green]"
    )
    for reason, count in sorted(stats.by_reason.items()):
        console.print(f"  {reason}: {count}")


@cli.command()
@click.pass_obj
def reconcile(obj: Context):
    """Demote canonical jobs that duplicate an earlier canonical job."""
    results = obj.engine().reconcile()
    if not results:
        console.print("[green]No duplicate collisions found[/green]")
        return
    for result in results:
        console.print(f"[yellow]{result.job_id}[/yellow] -> {result.parent_job_id} ({result.similarity:.2f})")
    console.print(f"[green]Demoted {len(results)} jobs[/green]")


def _load_criteria(path: Optional[str]) -> dict:
    if not path:
        return {}
    with open(path, 'r') as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise click.BadParameter("criteria file must contain a mapping", param_hint='--criteria')
    return data


@cli.command()
@click.option('--user', 'user_id', default='cli', help='User id the scores are cached under')
@click.option('--criteria', 'criteria_file', type=click.Path(exists=True, dir_okay=False),
              help='YAML file with search criteria')
@click.option('--title', 'titles', multiple=True, help='Desired job title (repeatable)')
@click.option('--skill', 'skills', multiple=True, help='Skill you have (repeatable)')
@click.option('--salary-min', type=float, help='Minimum annual salary')
@click.option('--salary-max', type=float, help='Maximum annual salary')
@click.option('--location', 'locations', multiple=True, help='Desired location (repeatable)')
@click.option('--remote/--no-remote', default=None, help='Remote preference')
@click.option('--experience', type=click.Choice([e.value for e in ExperienceLevel], case_sensitive=False),
              help='Your experience level')
@click.option('--exclude', 'exclude_keywords', multiple=True, help='Keyword that disqualifies a job (repeatable)')
@click.option('--page', type=int, default=1, help='Page number')
@click.option('--page-size', type=int, default=10, help='Jobs per page')
@click.option('--explain', is_flag=True, help='Show the explanation for each score')
@click.pass_obj
def score(obj: Context, user_id: str, criteria_file: Optional[str], titles, skills, salary_min, salary_max,
          locations, remote, experience, exclude_keywords, page: int, page_size: int, explain: bool):
    """Rank active jobs against search criteria."""
    values = _load_criteria(criteria_file)
    overrides = {
        'desired_titles': list(titles),
        'skills': list(skills),
        'salary_min': salary_min,
        'salary_max': salary_max,
        'desired_locations': list(locations),
        'remote': remote,
        'experience_level': experience.upper() if experience else None,
        'exclude_keywords': list(exclude_keywords),
    }
    values.update({k: v for k, v in overrides.items() if v not in (None, [])})
    try:
        criteria = UserSearchCriteria(**values)
    except (TypeError, ValueError) as e:
        raise click.BadParameter(str(e), param_hint='--criteria')

    service = RankingService.from_settings(obj.store, obj.config.scoring_settings())
    ranked = asyncio.run(service.get_scored_jobs(user_id, criteria, page=page, page_size=page_size))

    if not ranked:
        console.print("[yellow]No matching jobs found[/yellow]")
        return

    table = Table(title=f"Ranked Jobs (page {page})")
    table.add_column("Score", style="green", justify="right")
    table.add_column("Title", style="cyan")
    table.add_column("Company", style="magenta")
    table.add_column("Location", style="blue")
    table.add_column("Posted", style="yellow")
    table.add_column("ID", style="dim")
    for job, breakdown in ranked:
        marker = " *" if breakdown.recommended else ""
        table.add_row(
            f"{breakdown.total:.1f}{marker}",
            job.title,
            job.company,
            job.location.describe(),
            job.posted_at.strftime('%Y-%m-%d'),
            job.id,
        )
    console.print(table)

    if explain:
        for job, breakdown in ranked:
            console.print(f"\n[bold]{job.title}[/bold] ({job.id})")
            for name, points in breakdown.components.items():
                console.print(f"  {name}: {points:.2f}")
            for line in breakdown.explanation:
                console.print(f"  - {line}")


@cli.command()
@click.argument('job_id')
@click.pass_obj
def show(obj: Context, job_id: str):
    """Show one job, following redirects from demoted ids."""
    resolved = obj.store.resolve(job_id)
    job = obj.store.get(resolved)
    if job is None:
        console.print(f"[red]Job {job_id} not found[/red]")
        return
    if resolved != job_id:
        console.print(f"[yellow]{job_id} was merged into {resolved}[/yellow]")

    table = Table(title=job.title, show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    salary = '-'
    if job.salary is not None and job.salary.is_known:
        low, high = job.salary.bounds
        salary = f"{low:,.0f} - {high:,.0f} {job.salary.currency}"
    for label, value in (
        ("ID", job.id),
        ("Company", job.company),
        ("Location", job.location.describe()),
        ("Remote", job.remote_option.value),
        ("Type", job.job_type.value),
        ("Experience", job.experience_level.value if job.experience_level else '-'),
        ("Salary", salary),
        ("Skills", ', '.join(job.required_skills) or '-'),
        ("State", job.state.value),
        ("Posted", job.posted_at.isoformat()),
        ("First seen", job.metadata.first_seen_at.isoformat()),
        ("Last checked", job.metadata.last_checked_at.isoformat()),
        ("Sightings", str(job.metadata.check_count)),
        ("Quality", f"{job.quality_score:.0f}"),
        ("Duplicate of", job.parent_job_id or '-'),
        ("Apply", job.application_url),
    ):
        table.add_row(label, value)
    console.print(table)

    duplicates = obj.store.duplicates_of(job.id)
    if duplicates:
        console.print(f"[magenta]Also listed as: {', '.join(d.id for d in duplicates)}[/magenta]")


@cli.command()
@click.pass_obj
def stats(obj: Context):
    """Show catalog counts by lifecycle state."""
    counts = obj.store.count_by_state()
    table = Table(title="Catalog")
    table.add_column("State", style="cyan")
    table.add_column("Jobs", style="green", justify="right")
    for state, count in sorted(counts.items()):
        table.add_row(state, str(count))
    table.add_row("TOTAL", str(sum(counts.values())))
    console.print(table)


def main():
    """Main entry point for the CLI."""
    cli()
