import asyncio
from datetime import datetime
from importlib.metadata import PackageNotFoundError, version as package_version
from typing import Annotated

import httpx
import typer
from rich import print
from rich.console import Console
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from difybatch.cli.callbacks import base_url_callback, positive_int_callback
from difybatch.cli.completions import complete_failed_message_id, complete_setting_id
from difybatch.client import DifyClient
from difybatch.clock import SystemClock
from difybatch.config import RuntimeConfig
from difybatch.db import crud
from difybatch.db.models import DifySetting, FailedMessage
from difybatch.db.session import create_session_factory, get_db, init_db
from difybatch.exceptions import RemoteServiceError
from difybatch.models import RetryResult
from difybatch.service import ChatService
from difybatch.utils.logging import setup_logging

app = typer.Typer(no_args_is_help=True)
settings_app = typer.Typer(no_args_is_help=True, help="Manage Dify settings")
failed_app = typer.Typer(no_args_is_help=True, help="Inspect failed messages")
app.add_typer(settings_app, name="settings")
app.add_typer(failed_app, name="failed")

DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def _format_date(value: datetime | None) -> str:
    return datetime.strftime(value, DATE_FORMAT) if value is not None else "-"


def _session_factory(config: RuntimeConfig):
    return create_session_factory(url=config.database_url)


def print_setting(setting: DifySetting):
    setting_dict = {
        "ID": setting.id,
        "Name": setting.name,
        "Base URL": setting.base_url,
        "Batch Threshold": setting.batch_threshold,
        "Timeout": f"{setting.timeout}s",
        "Active": "[green]yes[/green]" if setting.is_active else "no",
        "Created At": _format_date(setting.created_at),
    }
    values = "\n".join([f"{key}: {value}" for key, value in setting_dict.items()])
    console = Console()
    console.print(Panel(values, title=setting.name, expand=False, highlight=True))


def print_failed_messages(failed_messages: list[FailedMessage], title: str):
    table = Table(
        "ID",
        "Task ID",
        "Attempts",
        "Error",
        "Failed At",
        "Last Retry Result",
        title=title,
    )
    for failed_message in failed_messages:
        history = failed_message.retry_history or []
        table.add_row(
            failed_message.id,
            failed_message.task_id or "-",
            str(failed_message.attempts),
            failed_message.error[:60],
            _format_date(failed_message.failed_at),
            history[-1]["result"] if history else "-",
        )
    console = Console()
    console.print(table)


def print_retry_results(results: list[RetryResult]):
    table = Table("Failed Message ID", "Queued", "Message", title="Retry Requests")
    for result in results:
        table.add_row(
            result.failed_message_id,
            "[green]yes[/green]" if result.success else "[red]no[/red]",
            result.message,
        )
    console = Console()
    console.print(table)


@app.command(name="init")
def init():
    """Create the database schema"""
    config = RuntimeConfig.from_env()
    init_db(_session_factory(config))
    print("[green]Database initialized[/green]")


@settings_app.command(name="add")
def add_setting(
    name: Annotated[str, typer.Option(help="The name of the setting")],
    api_key: Annotated[str, typer.Option(help="The Dify application API key")],
    base_url: Annotated[
        str,
        typer.Option(
            help="The Dify API base URL, e.g. https://api.dify.ai/v1",
            callback=base_url_callback,
        ),
    ],
    batch_threshold: Annotated[
        int,
        typer.Option(
            help="Number of messages closing a batch",
            callback=positive_int_callback,
        ),
    ] = 5,
    timeout: Annotated[
        int,
        typer.Option(
            help="Remote call timeout in seconds",
            callback=positive_int_callback,
        ),
    ] = 30,
    activate: Annotated[
        bool, typer.Option("--activate/--no-activate", help="Activate the setting")
    ] = False,
):
    """Add a Dify setting"""
    config = RuntimeConfig.from_env()
    now = SystemClock().now()
    with get_db(_session_factory(config)) as db:
        setting = crud.create_setting(
            db=db,
            name=name,
            api_key=api_key,
            base_url=base_url,
            now=now,
            batch_threshold=batch_threshold,
            timeout=timeout,
        )
        if activate:
            setting = crud.activate_setting(db=db, setting_id=setting.id, now=now)
    print_setting(setting=setting)


@settings_app.command(name="list")
def list_settings():
    """List Dify settings"""
    config = RuntimeConfig.from_env()
    with get_db(_session_factory(config)) as db:
        settings = crud.get_settings(db=db)
    table = Table("ID", "Name", "Base URL", "Threshold", "Timeout", "Active", title="Settings")
    for setting in settings:
        table.add_row(
            setting.id,
            setting.name,
            setting.base_url,
            str(setting.batch_threshold),
            f"{setting.timeout}s",
            "[green]yes[/green]" if setting.is_active else "no",
        )
    console = Console()
    console.print(table)


@settings_app.command(name="activate")
def activate_setting(
    setting_id: Annotated[
        str,
        typer.Argument(help="The id of the setting", autocompletion=complete_setting_id),
    ],
):
    """Activate a setting, deactivating every other one"""
    config = RuntimeConfig.from_env()
    with get_db(_session_factory(config)) as db:
        setting = crud.activate_setting(db=db, setting_id=setting_id, now=SystemClock().now())
    if setting is None:
        typer.echo(f"Setting with id: {setting_id} not found")
        raise typer.Exit(1)
    print(f"Setting [green]{setting.name}[/green] is now active.")


@app.command(name="health")
def health():
    """Check the active setting and the remote service"""
    config = RuntimeConfig.from_env()
    with get_db(_session_factory(config)) as db:
        setting = crud.get_active_setting(db=db)
    if setting is None:
        print("[red]No active Dify setting found[/red]")
        raise typer.Exit(1)
    client = DifyClient(user=config.user)
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        transient=True,
    ) as progress:
        progress.add_task(description=f"Contacting {setting.base_url}...", total=None)
        try:
            asyncio.run(client.get_parameters(setting=setting))
        except (RemoteServiceError, httpx.HTTPError) as error:
            print(f"[red]Remote service unavailable:[/red] {error}")
            raise typer.Exit(1)
    print(f"[green]OK[/green] {setting.name} ({setting.base_url})")


@failed_app.command(name="list")
def list_failed_messages(
    limit: Annotated[
        int, typer.Option(help="Maximum number of records", callback=positive_int_callback)
    ] = 100,
):
    """List failed messages that were not retried yet"""
    config = RuntimeConfig.from_env()
    with get_db(_session_factory(config)) as db:
        failed_messages = crud.get_unretried_failed_messages(db=db, limit=limit)
    print_failed_messages(failed_messages=failed_messages, title="Failed Messages")


async def _run_retries(
    *,
    config: RuntimeConfig,
    failed_message_id: str | None,
    limit: int,
    batch: bool,
    request_task: str | None,
) -> list[RetryResult]:
    service = ChatService(config=config, session_factory=_session_factory(config))
    await service.start(redispatch=False)
    try:
        if request_task is not None:
            summary = service.retries.retry_by_request_task_id(request_task_id=request_task)
            if not summary.results:
                print(f"[yellow]{summary.message}[/yellow]")
            results = summary.results
        elif failed_message_id is not None:
            results = [
                service.retries.retry(
                    failed_message_id=failed_message_id, retry_whole_batch=batch
                )
            ]
        else:
            failed_messages = service.retries.retryable_messages(limit=limit)
            results = list(
                service.retries.retry_many(
                    failed_message_ids=[failed_message.id for failed_message in failed_messages]
                ).values()
            )
    finally:
        await service.close()
    return results


@app.command(name="retry")
def retry(
    failed_message_id: Annotated[
        str | None,
        typer.Argument(
            help="The id of the failed message to retry",
            autocompletion=complete_failed_message_id,
        ),
    ] = None,
    retry_all: Annotated[
        bool, typer.Option("--all", help="Retry every failed message not retried yet")
    ] = False,
    limit: Annotated[
        int,
        typer.Option(
            help="Maximum number of messages retried with --all",
            callback=positive_int_callback,
        ),
    ] = 100,
    dry_run: Annotated[
        bool, typer.Option("--dry-run", help="Show what would be retried without retrying")
    ] = False,
    batch: Annotated[
        bool, typer.Option("--batch", help="Retry the whole batch the failed message belongs to")
    ] = False,
    request_task: Annotated[
        str | None,
        typer.Option(help="Retry the failed messages of a batch, by task id or batch identifier"),
    ] = None,
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Do not ask for confirmation")] = False,
):
    """Retry failed messages and wait for the outcome"""
    if batch and request_task is not None:
        print("[red]--batch and --request-task cannot be used together[/red]")
        raise typer.Exit(1)
    if batch and failed_message_id is None:
        print("[red]--batch requires a failed message id[/red]")
        raise typer.Exit(1)
    if failed_message_id is not None and retry_all:
        print("[red]A failed message id and --all cannot be used together[/red]")
        raise typer.Exit(1)
    if failed_message_id is None and not retry_all and request_task is None:
        print(
            "[yellow]Nothing to retry: pass a failed message id, --all or --request-task[/yellow]"
        )
        raise typer.Exit(1)

    config = RuntimeConfig.from_env()
    setup_logging(level=config.log_level)

    if dry_run:
        with get_db(_session_factory(config)) as db:
            if request_task is not None:
                task = crud.find_task(db=db, identifier=request_task)
                failed_messages = (
                    crud.get_failed_messages_by_request_task(db=db, request_task_pk=task.id)
                    if task is not None
                    else []
                )
            elif failed_message_id is not None:
                failed_message = crud.get_failed_message(db=db, failed_message_id=failed_message_id)
                failed_messages = (
                    [failed_message]
                    if failed_message is not None and not failed_message.retried
                    else []
                )
            else:
                failed_messages = crud.get_unretried_failed_messages(db=db, limit=limit)
        print_failed_messages(failed_messages=failed_messages, title="Would Retry")
        count = len(failed_messages)
        print(f"[yellow]Dry run:[/yellow] {count} failed message(s) would be retried")
        raise typer.Exit()

    if retry_all and not yes:
        typer.confirm(f"Retry up to {limit} failed messages?", abort=True)

    results = asyncio.run(
        _run_retries(
            config=config,
            failed_message_id=failed_message_id,
            limit=limit,
            batch=batch,
            request_task=request_task,
        )
    )
    if not results:
        print("[yellow]No failed messages to retry[/yellow]")
        raise typer.Exit(1)
    print_retry_results(results=results)

    with get_db(_session_factory(config)) as db:
        failed_messages = [
            crud.get_failed_message(db=db, failed_message_id=result.failed_message_id)
            for result in results
            if result.success
        ]
    if failed_messages:
        print_failed_messages(
            failed_messages=[fm for fm in failed_messages if fm is not None], title="Retry Outcomes"
        )
    if not any(result.success for result in results):
        raise typer.Exit(1)


@app.command()
def version():
    """Get the version of the package"""
    try:
        typer.echo(package_version("difybatch"))
    except PackageNotFoundError:
        typer.echo("unknown")
    raise typer.Exit()
