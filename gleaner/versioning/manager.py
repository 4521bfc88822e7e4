"""
Git version management for Gleaner.

Optionally keeps the knowledge base directory under git, committing after
each build so changes between builds can be reviewed.
"""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from git import Actor, GitCommandError, InvalidGitRepositoryError, NoSuchPathError, Repo


GITIGNORE = """# Gleaner git ignore file
*.tmp
.DS_Store
Thumbs.db
*.swp
*~
"""


class VersionManager:
    """
    Manages git operations for a knowledge base directory.
    """

    def __init__(self, repo_path: str = "kb"):
        """
        Initialize the version manager.

        Args:
            repo_path: Path to the knowledge base directory
        """
        self.repo_path = Path(repo_path)
        self.repo: Optional[Repo] = None
        logging.info(f"Initialized VersionManager for: {self.repo_path}")

    def _is_git_repository(self) -> bool:
        try:
            Repo(self.repo_path)
            return True
        except (InvalidGitRepositoryError, NoSuchPathError):
            return False

    def initialize_repository(self) -> bool:
        """
        Initialize a git repository if it doesn't exist.

        Returns:
            True if the repository exists or was created, False on error
        """
        try:
            if self._is_git_repository():
                self.repo = Repo(self.repo_path)
                return True

            self.repo_path.mkdir(parents=True, exist_ok=True)
            self.repo = Repo.init(self.repo_path)

            gitignore_path = self.repo_path / ".gitignore"
            if not gitignore_path.exists():
                with open(gitignore_path, 'w', encoding='utf-8') as f:
                    f.write(GITIGNORE)

            logging.info(f"Git repository initialized in {self.repo_path}")
            return True

        except (GitCommandError, OSError) as e:
            logging.error(f"Failed to initialize git repository: {e}")
            return False

    def has_changes(self) -> bool:
        if self.repo is None:
            return False
        return self.repo.is_dirty(untracked_files=True)

    def commit_all(self, message: str, author_name: str = "Gleaner",
                   author_email: str = "gleaner@localhost") -> Optional[str]:
        """
        Stage every change in the directory, including deletions, and commit.

        Args:
            message: Commit message
            author_name: Name of the commit author
            author_email: Email of the commit author

        Returns:
            Short hash of the new commit, or None if there was nothing to commit
            or the commit failed
        """
        if self.repo is None and not self.initialize_repository():
            return None

        try:
            if not self.has_changes():
                logging.info("No knowledge base changes to commit")
                return None

            self.repo.git.add(A=True)
            actor = Actor(author_name, author_email)
            commit = self.repo.index.commit(message, author=actor, committer=actor)
            logging.info(f"Created commit: {commit.hexsha[:8]} - {message}")
            return commit.hexsha[:8]

        except (GitCommandError, OSError, ValueError) as e:
            logging.error(f"Failed to commit knowledge base: {e}")
            return None

    def commit_build(self, message_template: str, page_count: int,
                     annotation_count: int) -> Optional[str]:
        """Commit after a knowledge base build, filling the message template."""
        message = message_template.format(
            page_count=page_count,
            annotation_count=annotation_count
        )
        return self.commit_all(message)

    def get_commit_history(self, limit: int = 10) -> List[Dict[str, Any]]:
        """
        Get the commit history for the repository.

        Args:
            limit: Maximum number of commits to return

        Returns:
            List of commit information dictionaries, newest first
        """
        if self.repo is None:
            return []

        try:
            return [
                {
                    'hash': commit.hexsha,
                    'short_hash': commit.hexsha[:8],
                    'message': commit.message.strip(),
                    'author': str(commit.author),
                    'date': commit.committed_datetime.isoformat(),
                }
                for commit in self.repo.iter_commits(max_count=limit)
            ]
        except (GitCommandError, ValueError) as e:
            logging.error(f"Failed to get commit history: {e}")
            return []
