"""clean command: delete the design review comment from a pull request."""

from __future__ import annotations

import click
from github import GithubException
from rich.console import Console

from penreview_core.errors import CommentError
from penreview_core.gh.comments import CommentReconciler, get_comment_marker
from penreview_core.gh.pull_request import get_pull, get_repo

console = Console()


@click.command("clean")
@click.option("--repo", required=True, help="GitHub repository in owner/name format.")
@click.option("--pr", "pr_number", type=int, required=True, help="Pull request number.")
@click.option("--marker", "comment_marker", default=None, help="Comment marker namespace used when posting.")
def clean_cmd(repo: str, pr_number: int, comment_marker: str | None):
    """Delete the marked design review comment from a pull request."""
    from penreview_core.config import resolve_github_token

    token = resolve_github_token()
    if not token:
        raise click.UsageError("No GitHub token found. Set GITHUB_TOKEN or run `gh auth login` first.")

    try:
        pull = get_pull(get_repo(repo, token=token), pr_number)
    except GithubException:
        raise click.ClickException(f"PR #{pr_number} not found in {repo}.")

    try:
        deleted = CommentReconciler(pull).delete(get_comment_marker(comment_marker))
    except CommentError as e:
        raise click.ClickException(str(e))

    if deleted:
        console.print("[green]Design review comment deleted.[/green]")
    else:
        console.print("[yellow]No design review comment found.[/yellow]")
