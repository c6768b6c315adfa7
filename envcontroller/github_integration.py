"""
GitHub integration for the ephemeral environment controller.

Posts a comment on the pull request of a feature branch listing the
environment's namespace and resources, and looks up pull requests by branch.
"""

from __future__ import annotations

from github import Auth, Github, GithubException

from envcontroller.constants import ENVIRONMENT_READY_MARKER
from envcontroller.exceptions import GitHubError
from envcontroller.logger import get_logger
from envcontroller.models import FeatureEnvironment

logger = get_logger(__name__)


def build_environment_comment(environments: list[FeatureEnvironment]) -> str:
    """Markdown comment body describing the environments of one feature branch."""
    lines = [ENVIRONMENT_READY_MARKER, ""]
    for environment in sorted(environments, key=lambda env: env.service_name):
        resources = environment.resources
        lines.append(f"**{environment.service_name}** → namespace `{environment.namespace}`")
        lines.append(f"- database: `{resources.db_name}`")
        lines.append(f"- queue: `{resources.queue_name}`")
        lines.append(f"- bucket: `{resources.bucket_name}`")
        lines.append("")

    if environments:
        expires_at = min(env.expires_at for env in environments)
        lines.append(
            f"The environment is deleted when this PR is merged or closed, "
            f"or at {expires_at:%Y-%m-%d %H:%M} UTC."
        )
    return "\n".join(lines)


class GithubClient:
    """
    Wrapper for GitHub API operations.
    """

    def __init__(self, token: str, repo_name: str):
        """
        Initialize GitHub client.

        Args:
            token: GitHub authentication token
            repo_name: Repository in format "owner/repo"
        """
        try:
            auth = Auth.Token(token)
            self.client = Github(auth=auth)
            self.repo = self.client.get_repo(repo_name)
            logger.info(f"GitHub client initialized for {repo_name} successfully")
        except Exception as e:
            logger.critical(f"Failed to initialize GitHub client: {e}")
            raise

    def find_pull_request(self, branch: str) -> int | None:
        """
        Find the open pull request whose head is branch.

        Raises:
            GitHubError: If the search fails
        """
        try:
            owner = self.repo.owner.login
            for pr in self.repo.get_pulls(state="open", head=f"{owner}:{branch}"):
                return pr.number
            return None
        except GithubException as e:
            raise GitHubError(f"Failed to look up pull request for {branch}: {e}") from e

    def upsert_environment_comment(self, pr_number: int, message: str) -> None:
        """
        Post the environment comment, or edit it if the bot already posted one.

        Raises:
            GitHubError: If any API call fails
        """
        try:
            pr = self.repo.get_pull(pr_number)

            for comment in pr.get_issue_comments():
                if ENVIRONMENT_READY_MARKER in comment.body:
                    comment.edit(message)
                    logger.info(
                        f"Updated comment {comment.id} on PR #{pr_number}",
                        extra={"pr_number": pr_number, "comment_id": comment.id},
                    )
                    return

            comment = pr.create_issue_comment(message)
            logger.info(
                f"Posted comment {comment.id} to PR #{pr_number}",
                extra={"pr_number": pr_number, "comment_id": comment.id},
            )
        except GithubException as e:
            raise GitHubError(f"Failed to post comment to PR #{pr_number}: {e}") from e
        except Exception as e:
            raise GitHubError(f"Unexpected error commenting on PR #{pr_number}: {e}") from e
