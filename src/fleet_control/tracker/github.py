"""GitHub REST implementation of the StateStore."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any
from urllib.parse import quote

import httpx

from fleet_control.config import TrackerConfig
from fleet_control.models import ItemKind, WorkItem
from fleet_control.tracker.base import Comment, ReviewState, StateStore, TrackerError

logger = logging.getLogger(__name__)

PER_PAGE = 100


def _parse_ts(value: str | None) -> float:
	if not value:
		return 0.0
	return datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp()


def _item_from_json(data: dict[str, Any], kind: ItemKind) -> WorkItem:
	return WorkItem(
		id=int(data["number"]),
		kind=kind,
		title=data.get("title", "") or "",
		labels=[lbl["name"] for lbl in data.get("labels", [])],
		body=data.get("body", "") or "",
		head_ref=(data.get("head") or {}).get("ref", ""),
		draft=bool(data.get("draft", False)),
		created_at=_parse_ts(data.get("created_at")),
		updated_at=_parse_ts(data.get("updated_at")),
	)


class GitHubStore(StateStore):
	"""Issues, PRs, labels and comments of one repository over the REST API."""

	def __init__(self, config: TrackerConfig, transport: httpx.AsyncBaseTransport | None = None) -> None:
		self._config = config
		self._repo = config.repo
		headers = {
			"Accept": "application/vnd.github+json",
			"User-Agent": "fleet-control/0.1",
			"X-GitHub-Api-Version": "2022-11-28",
		}
		token = config.token
		if token:
			headers["Authorization"] = f"Bearer {token}"
		self._client = httpx.AsyncClient(
			base_url=config.api_url,
			headers=headers,
			timeout=config.timeout,
			transport=transport,
		)

	async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
		try:
			resp = await self._client.request(method, path, **kwargs)
		except httpx.HTTPError as exc:
			raise TrackerError(f"{method} {path} failed: {exc}") from exc
		if resp.status_code >= 400:
			raise TrackerError(
				f"{method} {path} returned {resp.status_code}: {resp.text[:200]}"
			)
		return resp

	async def _paginate(self, path: str, params: dict[str, Any] | None = None) -> list[dict[str, Any]]:
		results: list[dict[str, Any]] = []
		url: str | None = path
		query: dict[str, Any] | None = {"per_page": PER_PAGE, **(params or {})}
		while url:
			resp = await self._request("GET", url, params=query)
			results.extend(resp.json())
			url = resp.links.get("next", {}).get("url")
			# The next link already carries the query string
			query = None
		return results

	def _repo_path(self, suffix: str) -> str:
		return f"/repos/{self._repo}{suffix}"

	async def list_items(self, label: str | None, kind: ItemKind = ItemKind.ISSUE) -> list[WorkItem]:
		if kind == ItemKind.PR:
			pulls = await self._paginate(self._repo_path("/pulls"), {"state": "open"})
			items = [_item_from_json(p, ItemKind.PR) for p in pulls]
			if label is not None:
				items = [i for i in items if i.has_label(label)]
			return items

		params: dict[str, Any] = {"state": "open"}
		if label is not None:
			params["labels"] = label
		issues = await self._paginate(self._repo_path("/issues"), params)
		# The issues endpoint also returns pull requests
		return [
			_item_from_json(i, ItemKind.ISSUE) for i in issues
			if "pull_request" not in i
		]

	async def get_item(self, item_id: int) -> WorkItem:
		resp = await self._request("GET", self._repo_path(f"/issues/{item_id}"))
		data = resp.json()
		if "pull_request" in data:
			pr = await self._request("GET", self._repo_path(f"/pulls/{item_id}"))
			return _item_from_json(pr.json(), ItemKind.PR)
		return _item_from_json(data, ItemKind.ISSUE)

	async def get_labels(self, item_id: int) -> list[str]:
		labels = await self._paginate(self._repo_path(f"/issues/{item_id}/labels"))
		return [lbl["name"] for lbl in labels]

	async def set_labels(
		self, item_id: int, add: list[str] | None = None, remove: list[str] | None = None,
	) -> None:
		if add:
			await self._request(
				"POST", self._repo_path(f"/issues/{item_id}/labels"),
				json={"labels": list(add)},
			)
		for name in remove or []:
			path = self._repo_path(f"/issues/{item_id}/labels/{quote(name, safe='')}")
			try:
				resp = await self._client.request("DELETE", path)
			except httpx.HTTPError as exc:
				raise TrackerError(f"DELETE {path} failed: {exc}") from exc
			if resp.status_code == 404:
				logger.debug("Label %s already absent on #%d", name, item_id)
			elif resp.status_code >= 400:
				raise TrackerError(f"DELETE {path} returned {resp.status_code}")

	async def comment(self, item_id: int, text: str) -> None:
		await self._request(
			"POST", self._repo_path(f"/issues/{item_id}/comments"),
			json={"body": text},
		)

	async def list_comments(self, item_id: int) -> list[Comment]:
		raw = await self._paginate(self._repo_path(f"/issues/{item_id}/comments"))
		return [
			Comment(
				author=(c.get("user") or {}).get("login", ""),
				body=c.get("body", "") or "",
				created_at=_parse_ts(c.get("created_at")),
			)
			for c in raw
		]

	async def get_review_state(self, pr_id: int) -> ReviewState:
		reviews = await self._paginate(self._repo_path(f"/pulls/{pr_id}/reviews"))
		latest: dict[str, str] = {}
		commented = False
		for review in reviews:
			user = (review.get("user") or {}).get("login", "")
			state = review.get("state", "")
			if state in ("APPROVED", "CHANGES_REQUESTED"):
				latest[user] = state
			elif state == "DISMISSED":
				latest.pop(user, None)
			elif state == "COMMENTED":
				commented = True
		if "CHANGES_REQUESTED" in latest.values():
			return ReviewState.CHANGES_REQUESTED
		if "APPROVED" in latest.values():
			return ReviewState.APPROVED
		return ReviewState.COMMENTED if commented else ReviewState.NONE

	async def close(self) -> None:
		await self._client.aclose()
