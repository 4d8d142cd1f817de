"""Telegram notifications for fleet events.

Uses async httpx client. Notifications are batched over a 5-second window
and sent as a single concatenated message to reduce API calls. Includes
priority-based backpressure: when the internal queue exceeds MAX_QUEUE_SIZE,
low-priority notifications are dropped.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from collections import deque

import httpx

logger = logging.getLogger(__name__)

BATCH_WINDOW = 5.0
MAX_QUEUE_SIZE = 100
TELEGRAM_MAX_LEN = 4096


class NotificationPriority(enum.Enum):
	HIGH = "high"
	LOW = "low"


class TelegramNotifier:
	"""Sends fleet updates to Telegram via Bot API with message batching."""

	def __init__(self, bot_token: str, chat_id: str, repo: str = "") -> None:
		self._bot_token = bot_token
		self._chat_id = chat_id
		self._repo = repo
		self._client: httpx.AsyncClient | None = None
		self._priority_queue: deque[tuple[NotificationPriority, str]] = deque()
		self._batch_task: asyncio.Task[None] | None = None
		self._queue_event: asyncio.Event = asyncio.Event()

	async def _ensure_client(self) -> httpx.AsyncClient:
		if self._client is None:
			self._client = httpx.AsyncClient(timeout=10.0)
		return self._client

	def _ensure_batch_task(self) -> None:
		if self._batch_task is None or self._batch_task.done():
			self._batch_task = asyncio.create_task(self._batch_loop())

	async def _batch_loop(self) -> None:
		"""Collect messages for BATCH_WINDOW seconds, then flush."""
		while True:
			try:
				await self._queue_event.wait()
				self._queue_event.clear()
			except asyncio.CancelledError:
				return

			await asyncio.sleep(BATCH_WINDOW)

			messages: list[str] = []
			while self._priority_queue:
				_, msg = self._priority_queue.popleft()
				messages.append(msg)

			await self._flush_batch(messages)

	@staticmethod
	def _split_message(combined: str, max_len: int = TELEGRAM_MAX_LEN) -> list[str]:
		"""Split a combined message at separator boundaries to fit within max_len."""
		if len(combined) <= max_len:
			return [combined]

		separator = "\n---\n"
		result: list[str] = []
		current = ""
		for chunk in combined.split(separator):
			if len(chunk) > max_len:
				if current:
					result.append(current)
					current = ""
				for i in range(0, len(chunk), max_len):
					result.append(chunk[i:i + max_len])
			elif not current:
				current = chunk
			elif len(current) + len(separator) + len(chunk) <= max_len:
				current = current + separator + chunk
			else:
				result.append(current)
				current = chunk
		if current:
			result.append(current)
		return result

	async def _flush_batch(self, messages: list[str]) -> None:
		"""Send a batch of messages, splitting across multiple Telegram messages if needed."""
		if not messages:
			return
		parts = self._split_message("\n---\n".join(messages))
		try:
			client = await self._ensure_client()
			url = f"https://api.telegram.org/bot{self._bot_token}/sendMessage"
			for part in parts:
				await client.post(url, json={
					"chat_id": self._chat_id,
					"text": part,
					"parse_mode": "Markdown",
					"disable_web_page_preview": True,
				})
		except httpx.HTTPError as exc:
			logger.warning("Telegram send failed: %s", exc)

	def _apply_backpressure(self) -> None:
		"""Drop low-priority messages when queue exceeds MAX_QUEUE_SIZE."""
		if len(self._priority_queue) <= MAX_QUEUE_SIZE:
			return
		high = [item for item in self._priority_queue if item[0] == NotificationPriority.HIGH]
		low = [item for item in self._priority_queue if item[0] != NotificationPriority.HIGH]
		low_slots = max(0, MAX_QUEUE_SIZE - len(high))
		dropped = len(low) - low_slots
		if dropped > 0:
			low = low[:low_slots]
			logger.warning("Backpressure: dropped %d low-priority notifications", dropped)
		self._priority_queue.clear()
		self._priority_queue.extend(high)
		self._priority_queue.extend(low)

	async def send(self, message: str, priority: NotificationPriority = NotificationPriority.LOW) -> None:
		"""Queue a message for batched delivery with optional priority."""
		self._ensure_batch_task()
		self._priority_queue.append((priority, message))
		self._apply_backpressure()
		self._queue_event.set()

	async def close(self) -> None:
		"""Flush remaining messages and close the HTTP client."""
		if self._batch_task is not None and not self._batch_task.done():
			self._batch_task.cancel()
			try:
				await self._batch_task
			except asyncio.CancelledError:
				pass

		remaining: list[str] = []
		while self._priority_queue:
			_, msg = self._priority_queue.popleft()
			remaining.append(msg)
		if remaining:
			await self._flush_batch(remaining)

		if self._client is not None:
			await self._client.aclose()
			self._client = None

	def _prefix(self) -> str:
		return f"[{self._repo}] " if self._repo else ""

	async def send_daemon_start(self, max_concurrency: int, recovered: int) -> None:
		await self.send(
			f"*{self._prefix()}Fleet daemon started*\n"
			f"Max concurrency: {max_concurrency}\n"
			f"Orphans recovered at startup: {recovered}",
			priority=NotificationPriority.HIGH,
		)

	async def send_daemon_stop(self, iterations: int, completed: int, failed: int, reason: str) -> None:
		await self.send(
			f"*{self._prefix()}Fleet daemon stopped*\n"
			f"Iterations: {iterations}\n"
			f"Completed: {completed}, Failed: {failed}\n"
			f"Reason: {reason}",
			priority=NotificationPriority.HIGH,
		)

	async def send_breaker_tripped(self, pattern: str, cooldown: float) -> None:
		await self.send(
			f"*{self._prefix()}Dispatch paused*\n"
			f"Repeated `{pattern}` failures across the fleet.\n"
			f"Next probe in {cooldown / 60:.0f} min.",
			priority=NotificationPriority.HIGH,
		)

	async def send_breaker_cleared(self, pattern: str, probes: int) -> None:
		await self.send(
			f"{self._prefix()}Dispatch resumed: probe succeeded after {probes} probe(s) (pattern `{pattern}`)",
		)

	async def send_retries_exhausted(self, item_id: int, error_class: str, attempts: int) -> None:
		await self.send(
			f"*{self._prefix()}Retries exhausted* for #{item_id}\n"
			f"Last failure: `{error_class}` after {attempts} retries.\n"
			"Manual review needed.",
			priority=NotificationPriority.HIGH,
		)

	async def send_stale_items(self, findings: list[tuple[int, str]]) -> None:
		if not findings:
			return
		lines = [f"{self._prefix()}Items flagged for manual review:"]
		lines += [f"- #{item_id}: {reason[:120]}" for item_id, reason in findings]
		await self.send("\n".join(lines))
