"""CLI commands for running prompts through the change-request pipeline."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import List, Optional

import typer

from .config import ConfigError, PipelineSettings, load_config, settings_from_config
from .hosting import GitAutomationProvider
from .models import ResponsesClient, ResponsesModelRunner
from .pipeline import CommitMessageSynthesizer, ProcessPromptOptions, PromptProcessor
from .prompts import EXECUTOR_SYSTEM_PROMPT
from .resolvers import parse_repository
from .schema import ContentBlock, GitIdentity, PromptResult, Session, SessionOptions
from .store import SQLiteSessionStore
from .tools import LocalWorkspaceService, SubprocessGitService, WorkspaceDiagnostics

APP_HELP = "Change request automation CLI entry point."
DEFAULT_CONFIG_NAME = "config.yaml"
DEFAULT_CLI_MODE = "commit-only"

app = typer.Typer(help=APP_HELP)


def _load_settings(config: Optional[str]) -> PipelineSettings:
    config_path = Path(config) if config else None
    if config_path is not None and not config_path.exists() and config == DEFAULT_CONFIG_NAME:
        config_path = None
    try:
        return settings_from_config(load_config(config_path))
    except ConfigError as error:
        raise typer.BadParameter(str(error)) from error


def _responses_url(base_url: str) -> str:
    return base_url.rstrip("/") + "/responses"


def _build_processor(settings: PipelineSettings, store: SQLiteSessionStore, api_key: Optional[str]) -> PromptProcessor:
    git_service = SubprocessGitService()
    commit_synthesizer: Optional[CommitMessageSynthesizer] = None
    try:
        commit_client = ResponsesClient(
            api_key=api_key,
            base_url=_responses_url(settings.model_base_url),
            model=settings.commit_message_model,
        )
    except ValueError:
        typer.echo("No model API key available; commit subjects fall back to templates.")
    else:
        commit_synthesizer = CommitMessageSynthesizer(commit_client, model=settings.commit_message_model)

    return PromptProcessor(
        store,
        LocalWorkspaceService(settings.workspace_base_dir),
        ResponsesModelRunner(
            api_key=api_key,
            base_url=_responses_url(settings.model_base_url),
            model=settings.model,
            timeout=settings.model_timeout,
            system_prompt=EXECUTOR_SYSTEM_PROMPT,
        ),
        git_service=git_service,
        diagnostics_service=WorkspaceDiagnostics(),
        automation_provider=GitAutomationProvider(
            git_service,
            branch_prefix=settings.branch_prefix,
            default_labels=settings.default_labels,
            identity=GitIdentity(name=settings.git_identity_name, email=settings.git_identity_email),
            default_host=settings.default_host,
        ),
        commit_synthesizer=commit_synthesizer,
        settings=settings,
    )


def build_agent_context(repository: Optional[str], *, mode: str = DEFAULT_CLI_MODE, dry_run: bool = False) -> dict:
    """Translate CLI flags into the agent context handed to the pipeline."""
    automation: dict = {"mode": mode}
    if dry_run:
        automation["dryRun"] = True
    agent_context: dict = {"automation": automation}
    if repository:
        agent_context["repository"] = repository
    return agent_context


def _render_result(result: PromptResult) -> None:
    typer.echo(f"Stop reason: {result.stop_reason.value}")
    typer.echo(f"Usage: {result.usage.input_tokens} in / {result.usage.output_tokens} out")
    if result.error_code:
        typer.echo(f"Error: {result.error_code}")
    typer.echo(f"Summary: {result.summary}")
    automation = result.github_automation
    if automation is None:
        typer.echo("Automation: not configured")
        return
    typer.echo(f"Automation: {automation.status.value}")
    if automation.skipped_reason:
        typer.echo(f"  Reason: {automation.skipped_reason}")
    if automation.branch:
        typer.echo(f"  Branch: {automation.branch}")
    if automation.commit:
        typer.echo(f"  Commit: {automation.commit.sha[:7]} {automation.commit.message}")
    if automation.pull_request:
        typer.echo(f"  Pull request: {automation.pull_request.url}")
    if automation.error:
        typer.echo(f"  Error: ({automation.error.code}) {automation.error.message}")


@app.command()
def prompt(
    text: str = typer.Argument(..., help="Prompt text to send to the model."),
    session_id: str = typer.Option(..., "--session", "-s", help="Session identifier."),
    config: Optional[str] = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the pipeline configuration file.",
    ),
    workspace: Optional[str] = typer.Option(None, "--workspace", "-w", help="Workspace path or file:// URI."),
    repository: Optional[str] = typer.Option(None, "--repo", "-r", help="Target repository (owner/name or URL)."),
    context_file: List[str] = typer.Option([], "--context-file", help="File to mention as prompt context."),
    token: Optional[str] = typer.Option(None, "--token", envvar="CRA_GITHUB_TOKEN", help="Repository credential."),
    api_key: Optional[str] = typer.Option(None, "--api-key", envvar="CRA_MODEL_API_KEY", help="Model API key."),
    mode: str = typer.Option(
        DEFAULT_CLI_MODE,
        "--mode",
        help="Automation mode: commit-only, full or none. Full mode needs a hosting client, which this CLI does not wire.",
    ),
    dry_run: bool = typer.Option(False, "--dry-run/--no-dry-run", help="Commit locally without pushing."),
    as_json: bool = typer.Option(False, "--json", help="Print the full result as JSON."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Run one prompt against a session, creating the session on first use."""
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    settings = _load_settings(config)

    agent_context = build_agent_context(repository, mode=mode, dry_run=dry_run)

    with SQLiteSessionStore(settings.db_path) as store:
        if store.get_session(session_id) is None:
            store.put_session(
                Session(
                    session_id=session_id,
                    workspace_uri=workspace,
                    session_options=SessionOptions(enable_git_ops=True),
                )
            )
            typer.echo(f"Created session {session_id}.")
        processor = _build_processor(settings, store, api_key)
        options = ProcessPromptOptions(
            session_id=session_id,
            content=[ContentBlock(type="text", text=text)],
            context_files=list(context_file) or None,
            agent_context=agent_context,
            api_key=api_key,
            github_token=token,
            notification_sink=_echo_progress if verbose else None,
        )
        result = asyncio.run(processor.process_prompt(options))

    if as_json:
        typer.echo(json.dumps(result.to_payload(), indent=2))
    else:
        _render_result(result)
    if result.stop_reason.value == "error":
        raise typer.Exit(code=1)


def _echo_progress(method: str, params: dict) -> None:
    typer.echo(f"[{method}] {params.get('status')}: {params.get('message')}", err=True)


@app.command("sessions")
def sessions(
    config: Optional[str] = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the pipeline configuration file.",
    ),
) -> None:
    """List stored sessions, most recently updated first."""
    settings = _load_settings(config)
    with SQLiteSessionStore(settings.db_path) as store:
        session_ids = store.list_session_ids()
    if not session_ids:
        typer.echo("No sessions stored.")
        return
    for session_id in session_ids:
        typer.echo(session_id)


@app.command("parse-repo")
def parse_repo(value: str = typer.Argument(..., help="owner/name, https URL or git@host:owner/name")) -> None:
    """Show how a repository reference is interpreted."""
    parsed = parse_repository(value)
    if parsed is None:
        typer.echo(f"Could not parse repository: {value}")
        raise typer.Exit(code=1)
    typer.echo(f"owner: {parsed.owner}")
    typer.echo(f"name: {parsed.name}")
    if parsed.clone_url:
        typer.echo(f"clone_url: {parsed.clone_url}")


if __name__ == "__main__":
    app()
