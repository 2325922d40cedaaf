import asyncio
import dataclasses
import json
from typing import Any, Optional

import click

from imagegen import __version__
from imagegen.sdk.config import Settings
from imagegen.sdk.errors import ConfigError, NoImageFound, SDKError
from imagegen.sdk.logging import configure_logging
from imagegen.sdk.normalizer import ResponseNormalizer
from imagegen.sdk.poller import JobPoller, PollOptions
from imagegen.sdk.streaming import StreamDecoder

CHUNK_SIZE = 4096
PREVIEW_CHARS = 48


def _load_settings(ctx: click.Context) -> Settings:
    try:
        return Settings.load(ctx.obj.get("config_path"))
    except ConfigError as e:
        raise click.ClickException(e.message) from e


def _abbreviate(artifact_json: dict[str, Any]) -> dict[str, Any]:
    b64 = artifact_json.get("b64_json")
    if b64 and len(b64) > PREVIEW_CHARS:
        return {**artifact_json, "b64_json": f"{b64[:PREVIEW_CHARS]}... ({len(b64)} chars)"}
    return artifact_json


@click.group()
@click.version_option(version=__version__, prog_name="imagegen")
@click.option("--debug", is_flag=True, help="Verbose logging on stderr.")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False),
    default=None,
    help="YAML settings file (IMAGEGEN_* variables override it).",
)
@click.pass_context
def cli(ctx, debug, config_path):
    """imagegen - decode, normalize and poll image-generation responses."""
    configure_logging(debug)
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


@cli.command()
@click.argument("source", type=click.File("rb"))
def decode(source):
    """Decode a captured SSE transcript, one JSON event per line."""

    def chunks():
        while True:
            chunk = source.read(CHUNK_SIZE)
            if not chunk:
                return
            yield chunk

    async def run():
        async for event in StreamDecoder().decode(chunks()):
            click.echo(json.dumps(dataclasses.asdict(event), ensure_ascii=False))

    try:
        asyncio.run(run())
    except SDKError as e:
        click.echo(f"Error: {e.message}", err=True)
        raise SystemExit(1)


@cli.command()
@click.argument("source", type=click.File("r"))
@click.option("--no-fetch", is_flag=True, help="Keep URLs as URLs instead of downloading them.")
@click.option("--full", is_flag=True, help="Print base64 payloads in full.")
@click.pass_context
def extract(ctx, source, no_fetch, full):
    """Normalize a response payload (JSON or text) into image artifacts."""
    text = source.read()
    try:
        payload: Any = json.loads(text)
    except json.JSONDecodeError:
        payload = text.strip()

    async def run():
        if no_fetch:
            return await ResponseNormalizer(resolve_urls=False).extract(payload)
        settings = _load_settings(ctx)
        async with settings.create_client() as client:
            return await settings.create_normalizer(client).extract(payload)

    try:
        artifacts = asyncio.run(run())
    except NoImageFound as e:
        click.echo(f"Error: {e.message}", err=True)
        raise SystemExit(1)

    for artifact in artifacts:
        response = artifact.to_response()
        click.echo(json.dumps(response if full else _abbreviate(response)))


@cli.command()
@click.argument("job_id")
@click.option("--interval", type=float, default=None, help="Seconds between polls.")
@click.option("--max-attempts", type=int, default=None, help="Fetch budget.")
@click.option("--not-found-tolerance", type=int, default=None, help="Consecutive 404s before giving up.")
@click.pass_context
def poll(ctx, job_id, interval, max_attempts, not_found_tolerance):
    """Poll a job until it succeeds, fails or runs out of budget."""
    settings = _load_settings(ctx)
    overrides = {
        "interval": interval,
        "max_attempts": max_attempts,
        "not_found_tolerance": not_found_tolerance,
    }
    try:
        options = PollOptions.model_validate(
            {**settings.poll.model_dump(), **{k: v for k, v in overrides.items() if v is not None}}
        )
    except ValueError as e:
        raise click.ClickException(str(e)) from e

    def report(percent: int, record: Any) -> None:
        click.echo(f"{record.status.value} {percent}%")

    async def run():
        async with settings.create_client() as client:
            poller = JobPoller(client.get_job, options, on_progress=report)
            return await poller.poll(job_id)

    outcome = asyncio.run(run())
    if outcome.ok:
        click.echo(json.dumps(outcome.record.result))
        return
    message: Optional[str] = outcome.error.message if outcome.error else outcome.state.value
    click.echo(f"Error: {message}", err=True)
    raise SystemExit(1)


if __name__ == "__main__":
    cli()
