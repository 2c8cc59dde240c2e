"""review command: render changed frames and publish the design review comment."""

from __future__ import annotations

import json
import os

import click
from rich.console import Console

from penreview_core.errors import ConfigError, ContextError
from penreview_core.gh.pull_request import read_event_context
from penreview_core.models import ReviewSummary
from penreview_core.reviewer import review_pull_request

console = Console()


def resolve_target(repo: str | None, pr_number: int | None) -> tuple[str, int]:
    """Use --repo/--pr when both are given, otherwise the Actions event payload."""
    if repo and pr_number is not None:
        return repo, pr_number
    event_repo, event_pr = read_event_context(repo_name=repo)
    return repo or event_repo, pr_number if pr_number is not None else event_pr


def write_outputs(summary: ReviewSummary, output_path: str | None = None) -> None:
    """Append step outputs to $GITHUB_OUTPUT when running inside Actions."""
    output_path = output_path or os.environ.get("GITHUB_OUTPUT")
    if not output_path:
        return
    with open(output_path, "a", encoding="utf-8") as f:
        f.write(f"frames-rendered={summary.frames_rendered}\n")
        f.write(f"changed-files={json.dumps(summary.changed_files)}\n")
        if summary.comment_id is not None:
            f.write(f"comment-id={summary.comment_id}\n")


@click.command("review")
@click.option("--repo", default=None, help="GitHub repository in owner/name format. Defaults to the Actions event.")
@click.option("--pr", "pr_number", type=int, default=None, help="Pull request number. Defaults to the Actions event.")
@click.option(
    "--mode",
    "review_mode",
    type=click.Choice(["full", "diff"]),
    default=None,
    help="full: render every frame; diff: only added/modified frames, before and after.",
)
@click.option(
    "--comment-mode",
    type=click.Choice(["create", "update", "none"]),
    default=None,
    help="How to publish the report comment. Overrides config file.",
)
@click.option("--marker", "comment_marker", default=None, help="Comment marker namespace for parallel workflows.")
@click.option("--output-dir", default=None, help="Download rendered images into this directory.")
@click.option("--include-removed", is_flag=True, help="List removed documents in the report.")
@click.option(
    "--config",
    "config_path",
    default=".penreview.yml",
    show_default=True,
    help="Path to the configuration file.",
    envvar="PENREVIEW_CONFIG",
)
def review_cmd(
    repo: str | None,
    pr_number: int | None,
    review_mode: str | None,
    comment_mode: str | None,
    comment_marker: str | None,
    output_dir: str | None,
    include_removed: bool | None,
    config_path: str,
):
    """Render changed design frames of a pull request and post one report comment.

    \b
    Required environment variables:
      GITHUB_TOKEN                GitHub token (or use gh CLI)
      PENREVIEW_SERVICE_URL       Render service URL (or service_url in config)
    Optional:
      PENREVIEW_SERVICE_API_KEY   Render service API key; without it the
                                  GitHub Actions OIDC token is used
    """
    from penreview_core.config import load_config

    config = load_config(
        config_path,
        cli_overrides={
            "review_mode": review_mode,
            "comment_mode": comment_mode,
            "comment_marker": comment_marker,
            "output_dir": output_dir,
            "include_removed": include_removed or None,
        },
    )

    if not config.get("github_token"):
        raise click.UsageError(
            "No GitHub token found. Set GITHUB_TOKEN or run `gh auth login` first.\n"
            "Create a token at https://github.com/settings/tokens"
        )

    try:
        repo, pr_number = resolve_target(repo, pr_number)
        summary = review_pull_request(repo, pr_number, config)
    except ConfigError as e:
        raise click.UsageError(str(e))
    except ContextError as e:
        raise click.ClickException(str(e))

    write_outputs(summary)
    if summary.comment_id is not None:
        console.print(f"Report comment: #{summary.comment_id}")
