"""Ranking of storage accounts by their recent success rate."""

from __future__ import annotations

import random
import threading
import time
from dataclasses import dataclass

DEFAULT_NUMBER_OF_BUCKETS = 6
DEFAULT_BUCKET_DURATION_IN_SECONDS = 10
DEFAULT_TIERS = (90, 70, 30, 0)


def _default_time_provider():
    return int(time.time())


@dataclass
class BucketStats:
    """Success and total counts within one time bucket."""

    success_count: int = 0
    total_count: int = 0

    def log_result(self, success):
        self.total_count += 1
        if success:
            self.success_count += 1

    def reset(self):
        self.success_count = 0
        self.total_count = 0


class RankedStorageAccount:
    """Tracks results of one storage account over a sliding window of time buckets."""

    def __init__(self, account_name, number_of_buckets, bucket_duration, time_provider):
        self.account_name = account_name
        self.number_of_buckets = number_of_buckets
        self.bucket_duration = bucket_duration
        self.time_provider = time_provider
        self.buckets = [BucketStats() for _ in range(number_of_buckets)]
        self.current_bucket_index = 0
        self.last_update_time = time_provider()

    def _adjust_for_time_passed(self):
        current_time = self.time_provider()
        delta = current_time - self.last_update_time
        window = 0
        if delta >= self.bucket_duration:
            self.last_update_time = current_time
            window = int(delta // self.bucket_duration)
            for step in range(1, min(window, self.number_of_buckets) + 1):
                self.buckets[(self.current_bucket_index + step) % self.number_of_buckets].reset()
        return (self.current_bucket_index + window) % self.number_of_buckets

    def log_result(self, success):
        """Record one success or failure at the current time."""
        self.current_bucket_index = self._adjust_for_time_passed()
        self.buckets[self.current_bucket_index].log_result(success)

    def rank(self):
        """Weighted success rate in [0, 1]; newer buckets weigh more, 1.0 with no data."""
        total = 0.0
        total_weight = 0
        for weight in range(1, self.number_of_buckets + 1):
            bucket = self.buckets[(self.current_bucket_index + weight) % self.number_of_buckets]
            if bucket.total_count == 0:
                continue
            total += bucket.success_count / bucket.total_count * weight
            total_weight += weight
        if total_weight == 0:
            return 1.0
        return total / total_weight

    def __repr__(self):
        return f"RankedStorageAccount({self.account_name!r}, rank={self.rank():.3f})"


class RankedStorageAccountSet:
    """A thread-safe set of ranked storage accounts."""

    def __init__(self, number_of_buckets, bucket_duration, tiers, time_provider):
        self.number_of_buckets = number_of_buckets
        self.bucket_duration = bucket_duration
        self.tiers = tuple(tiers)
        self.time_provider = time_provider
        self._accounts = {}
        self._lock = threading.Lock()

    def register(self, account_name):
        """Start tracking an account; registering twice keeps the existing history."""
        with self._lock:
            if account_name not in self._accounts:
                self._accounts[account_name] = RankedStorageAccount(
                    account_name, self.number_of_buckets, self.bucket_duration, self.time_provider
                )

    def add_result(self, account_name, success):
        """Record a result for a registered account; unknown accounts are ignored."""
        with self._lock:
            account = self._accounts.get(account_name)
            if account is not None:
                account.log_result(success)

    def get(self, account_name):
        """Return the tracked account, or None if it is not registered."""
        with self._lock:
            return self._accounts.get(account_name)

    def ranked_shuffled_accounts(self):
        """Accounts grouped by rank tier, best tier first, shuffled within each tier."""
        with self._lock:
            by_tier = [[] for _ in self.tiers]
            for account in self._accounts.values():
                percentage = int(account.rank() * 100.0)
                for tier_index, threshold in enumerate(self.tiers):
                    if percentage >= threshold:
                        by_tier[tier_index].append(account)
                        break

            result = []
            for tier in by_tier:
                random.shuffle(tier)
                result.extend(tier)
            return result


def default_ranked_storage_account_set():
    """A set with the default bucket count, bucket duration, tiers and wall clock."""
    return RankedStorageAccountSet(
        DEFAULT_NUMBER_OF_BUCKETS,
        DEFAULT_BUCKET_DURATION_IN_SECONDS,
        DEFAULT_TIERS,
        _default_time_provider,
    )