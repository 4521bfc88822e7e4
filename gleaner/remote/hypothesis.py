"""
Hypothesis client for Gleaner.

This module handles communication with the Hypothesis annotation API.
"""

import httpx
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from ..errors import RemoteError
from ..models import Annotation
from .base import BaseRemote


DEFAULT_BASE_URL = "https://api.hypothes.is/api"


class HypothesisClient(BaseRemote):
    """
    Talks to the Hypothesis REST API with a developer key.
    """

    def __init__(self, username: str, key: str, base_url: Optional[str] = None,
                 page_size: int = 200, timeout: float = 30.0,
                 client: Optional[httpx.Client] = None):
        """
        Initialize the Hypothesis client.

        Args:
            username: Hypothesis username
            key: Hypothesis developer API key
            base_url: API root (defaults to the public Hypothesis service)
            page_size: Annotations requested per search page
            timeout: Request timeout in seconds
            client: Optional preconfigured httpx client (used by tests)
        """
        self.username = username
        self.base_url = (base_url or DEFAULT_BASE_URL).rstrip("/")
        self.page_size = page_size
        self.client = client or httpx.Client(timeout=timeout)
        self.headers = {
            "Authorization": f"Bearer {key}",
            "Accept": "application/vnd.hypothesis.v1+json",
        }
        self._group_names: Optional[Dict[str, str]] = None

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.client.close()

    @property
    def user(self) -> str:
        """Account identifier used in search filters."""
        return f"acct:{self.username}@hypothes.is"

    def _request(self, method: str, path: str, annotation_id: Optional[str] = None,
                 **kwargs) -> Any:
        """
        Make a request to the API.

        Returns:
            The decoded JSON body, or None for an empty body

        Raises:
            RemoteError: If the request fails or is rejected
        """
        try:
            response = self.client.request(
                method,
                f"{self.base_url}{path}",
                headers=self.headers,
                **kwargs
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise RemoteError(
                f"Hypothesis {method} {path} failed: {e.response.status_code} {e.response.text}",
                annotation_id=annotation_id,
                status_code=e.response.status_code
            ) from e
        except httpx.RequestError as e:
            raise RemoteError(
                f"Failed to connect to Hypothesis: {e}",
                annotation_id=annotation_id
            ) from e

        if not response.content:
            return None
        return response.json()

    def fetch_user_profile(self) -> Dict[str, Any]:
        """Profile of the authenticated user."""
        return self._request("GET", "/profile") or {}

    def authorize(self) -> bool:
        """Check that the configured credentials are accepted."""
        try:
            return self.fetch_user_profile().get("userid") is not None
        except RemoteError as e:
            logging.warning(f"Hypothesis authorization failed: {e}")
            return False

    def group_names(self) -> Dict[str, str]:
        """Map of group ID to group name for the user's groups, fetched once."""
        if self._group_names is None:
            groups = self._request("GET", "/groups") or []
            self._group_names = {group["id"]: group.get("name", "") for group in groups}
        return self._group_names

    def list_annotations(
        self,
        group: str,
        updated_after: Optional[datetime],
        page_token: Optional[str] = None
    ) -> Tuple[List[Annotation], Optional[str]]:
        params = {
            "group": group,
            "user": self.user,
            "limit": self.page_size,
            "sort": "updated",
            "order": "asc",
        }
        if page_token is not None:
            params["search_after"] = page_token
        elif updated_after is not None:
            params["search_after"] = updated_after.isoformat()

        result = self._request("GET", "/search", params=params) or {}
        rows = result.get("rows", [])
        names = self.group_names() if rows else {}

        annotations = []
        for row in rows:
            row.setdefault("group_name", names.get(row.get("group", group), ""))
            annotations.append(Annotation.from_api(row))

        next_token = rows[-1]["updated"] if len(rows) >= self.page_size else None
        logging.debug(f"Fetched {len(annotations)} annotations from group {group}")
        return annotations, next_token

    def update_tags(self, annotation_id: str, tags: List[str]) -> None:
        self._request("PATCH", f"/annotations/{annotation_id}",
                      annotation_id=annotation_id, json={"tags": list(tags)})

    def delete(self, annotation_id: str) -> None:
        self._request("DELETE", f"/annotations/{annotation_id}", annotation_id=annotation_id)

    def update_group(self, annotation_id: str, new_group: str) -> None:
        self._request("PATCH", f"/annotations/{annotation_id}",
                      annotation_id=annotation_id, json={"group": new_group})
