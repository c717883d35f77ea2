#!/usr/bin/env python3
"""
Etherscan Indexer Client for LP Ledger Sync
Fetches IncreaseLiquidity / DecreaseLiquidity / Collect logs of one position
from the Etherscan v2 multichain API and decodes them into RawEvents.

Requests are spaced at least min_spacing_ms apart and retried with
exponential backoff on HTTP 429/5xx, network errors and the "max calls per
sec" NOTOK body. Everything else is raised as EtherscanApiError.

Version: 2.0.0
Developer: 8roku8.hl
"""

import os
import random
import threading
import time
from datetime import datetime, timezone

import requests

from config import get_nfpm_address, assert_supported_chain
from constants import (
    ETHERSCAN_API_URL, ETHERSCAN_MIN_SPACING_MS, ETHERSCAN_MAX_RETRIES,
    ETHERSCAN_BASE_DELAY_MS, ETHERSCAN_MAX_DELAY_MS, ETHERSCAN_USER_AGENT,
    EVENT_SIGNATURES, RAW_EVENT_TYPES, INCREASE_LIQUIDITY, DECREASE_LIQUIDITY
)
from errors import ConfigurationError, EtherscanApiError
from ledger_types import RawEvent
from logger import get_logger


def token_id_topic(nft_id):
    """uint256 token id as a 32-byte hex topic"""
    return "0x" + format(int(nft_id), "064x")


def _parse_int(value):
    """Etherscan returns numbers as hex ("0x..") or decimal strings"""
    if isinstance(value, int):
        return value
    value = str(value)
    if value.startswith("0x") or value.startswith("0X"):
        return int(value, 16) if len(value) > 2 else 0
    return int(value)


def _split_words(data, expected, event_name):
    payload = data[2:] if data.startswith("0x") else data
    words = [payload[i:i + 64] for i in range(0, len(payload), 64)]
    if len(words) < expected or any(len(word) != 64 for word in words[:expected]):
        raise ValueError(f"Invalid {event_name} data: expected {expected} words, got {len(words)}")
    return words


def decode_liquidity_data(data):
    """IncreaseLiquidity / DecreaseLiquidity data: (liquidity, amount0, amount1)"""
    words = _split_words(data, 3, "liquidity event")
    return int(words[0], 16), int(words[1], 16), int(words[2], 16)


def decode_collect_data(data):
    """Collect data: (recipient, amount0, amount1)"""
    words = _split_words(data, 3, "Collect")
    return "0x" + words[0][24:], int(words[1], 16), int(words[2], 16)


def parse_event_log(log, event_type, chain_id):
    """Turn one Etherscan log entry into a RawEvent"""
    topics = log.get("topics") or []
    if len(topics) < 2 or not topics[1]:
        raise ValueError("Missing tokenId in event topics")

    base = dict(
        event_type=event_type,
        token_id=int(topics[1], 16),
        chain_id=chain_id,
        block_number=_parse_int(log["blockNumber"]),
        transaction_index=_parse_int(log["transactionIndex"]),
        log_index=_parse_int(log["logIndex"]),
        transaction_hash=log["transactionHash"],
        block_timestamp=datetime.fromtimestamp(_parse_int(log["timeStamp"]), tz=timezone.utc),
    )
    if event_type in (INCREASE_LIQUIDITY, DECREASE_LIQUIDITY):
        liquidity, amount0, amount1 = decode_liquidity_data(log["data"])
        return RawEvent(liquidity=liquidity, amount0=amount0, amount1=amount1, **base)
    recipient, amount0, amount1 = decode_collect_data(log["data"])
    return RawEvent(recipient=recipient, amount0=amount0, amount1=amount1, **base)


class EtherscanClient:
    """Position event indexer backed by the Etherscan v2 API"""

    def __init__(self, api_key=None, session=None, min_spacing_ms=ETHERSCAN_MIN_SPACING_MS,
                 max_retries=ETHERSCAN_MAX_RETRIES, sleep=time.sleep, timeout=30):
        self.api_key = api_key or os.environ.get("ETHERSCAN_API_KEY", "")
        if not self.api_key:
            raise ConfigurationError(
                "ETHERSCAN_API_KEY is not set. Get your API key at: https://etherscan.io/myapikey"
            )
        self.session = session or requests.Session()
        self.session.headers.update({"User-Agent": ETHERSCAN_USER_AGENT})
        self.min_spacing = min_spacing_ms / 1000.0
        self.max_retries = max_retries
        self.timeout = timeout
        self._sleep = sleep
        self._last_request_at = 0.0
        self._schedule_lock = threading.Lock()
        self.log = get_logger("EtherscanClient")

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    def _wait_for_slot(self):
        with self._schedule_lock:
            wait = self._last_request_at + self.min_spacing - time.monotonic()
            if wait > 0:
                self._sleep(wait)
            self._last_request_at = time.monotonic()

    def _backoff(self, attempt, retry_after=None):
        delay_ms = min(ETHERSCAN_MAX_DELAY_MS, ETHERSCAN_BASE_DELAY_MS * 2 ** attempt)
        if retry_after:
            try:
                delay_ms = min(ETHERSCAN_MAX_DELAY_MS, max(ETHERSCAN_BASE_DELAY_MS, float(retry_after) * 1000))
            except ValueError:
                pass
        return (delay_ms + random.randint(0, 200)) / 1000.0

    @staticmethod
    def _is_rate_limited(data):
        result = data.get("result")
        return (
            data.get("status") != "1"
            and data.get("message") == "NOTOK"
            and isinstance(result, str)
            and "max calls per sec" in result.lower()
        )

    def _get(self, params):
        """GET with spacing and retries; returns the decoded JSON body"""
        params = dict(params, apikey=self.api_key)
        for attempt in range(self.max_retries + 1):
            self._wait_for_slot()
            try:
                response = self.session.get(ETHERSCAN_API_URL, params=params, timeout=self.timeout)
            except requests.RequestException as e:
                if attempt >= self.max_retries:
                    raise EtherscanApiError(f"Failed to reach Etherscan: {e}") from e
                delay = self._backoff(attempt)
                self.log.warning("Network error, retrying", attempt=attempt + 1, delay=round(delay, 2))
                self._sleep(delay)
                continue

            if response.status_code == 429 or 500 <= response.status_code < 600:
                if attempt >= self.max_retries:
                    raise EtherscanApiError(
                        f"Etherscan API error: {response.status_code} {response.reason}",
                        response.status_code
                    )
                delay = self._backoff(attempt, response.headers.get("Retry-After"))
                self.log.warning("Retryable HTTP error, backing off", status=response.status_code,
                                 attempt=attempt + 1, delay=round(delay, 2))
                self._sleep(delay)
                continue

            if not response.ok:
                raise EtherscanApiError(
                    f"Etherscan API error: {response.status_code} {response.reason}", response.status_code
                )

            try:
                data = response.json()
            except ValueError as e:
                raise EtherscanApiError(f"Etherscan returned invalid JSON: {e}") from e

            if self._is_rate_limited(data) and attempt < self.max_retries:
                delay = self._backoff(attempt)
                self.log.warning("Etherscan rate limit (NOTOK), retrying", attempt=attempt + 1,
                                 delay=round(delay, 2))
                self._sleep(delay)
                continue
            return data

        raise EtherscanApiError("Etherscan retries exhausted")

    # ------------------------------------------------------------------
    # Logs
    # ------------------------------------------------------------------

    def fetch_logs(self, chain_id, contract_address, from_block, to_block, topic0=None, topic1=None):
        assert_supported_chain(chain_id)
        params = {
            "chainid": str(chain_id),
            "module": "logs",
            "action": "getLogs",
            "address": contract_address,
            "fromBlock": str(from_block),
            "toBlock": str(to_block),
        }
        if topic0:
            params["topic0"] = topic0
        if topic1:
            params["topic1"] = topic1
            params["topic0_1_opr"] = "and"

        data = self._get(params)
        if data.get("status") != "1":
            if data.get("message") == "No records found":
                return []
            result = data.get("result")
            raise EtherscanApiError(
                f"Etherscan API error: {data.get('message')} {result if isinstance(result, str) else ''}".strip()
            )
        result = data.get("result")
        return result if isinstance(result, list) else []

    def fetch_position_events(self, chain_id, nft_id, from_block, to_block, event_types=RAW_EVENT_TYPES):
        """All events of one position in [from_block, to_block], deduplicated and sorted"""
        nfpm_address = get_nfpm_address(chain_id)
        topic1 = token_id_topic(nft_id)
        self.log.debug("Fetching position events", chain_id=chain_id, nft_id=nft_id,
                       from_block=from_block, to_block=to_block)

        events = []
        for event_type in event_types:
            logs = self.fetch_logs(chain_id, nfpm_address, from_block, to_block,
                                   topic0=EVENT_SIGNATURES[event_type], topic1=topic1)
            for entry in logs:
                try:
                    events.append(parse_event_log(entry, event_type, chain_id))
                except (KeyError, ValueError) as e:
                    raise EtherscanApiError(
                        f"Failed to parse {event_type} log "
                        f"{entry.get('transactionHash')}:{entry.get('logIndex')}: {e}"
                    ) from e

        unique = {}
        for event in events:
            unique.setdefault((event.transaction_hash.lower(), event.log_index), event)
        return sorted(unique.values(), key=lambda event: event.ordering_key)


__all__ = [
    "EtherscanClient", "parse_event_log", "decode_liquidity_data", "decode_collect_data",
    "token_id_topic",
]
