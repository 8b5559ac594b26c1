from __future__ import annotations

from collections.abc import Iterable

from .models import AuthorizationResult, CrawlPolicy
from .urls import clean_domain


class AuthorizationPolicyResolver:
    """Hostname to crawl policy lookup over a snapshot of authorized domains."""

    def __init__(self, policies: Iterable[CrawlPolicy]):
        self._by_domain = {clean_domain(p.domain): p for p in policies}

    def __len__(self) -> int:
        return len(self._by_domain)

    def resolve(self, hostname: str) -> AuthorizationResult:
        host = clean_domain(hostname)
        if not host:
            return AuthorizationResult(authorized=False)

        exact = self._by_domain.get(host)
        if exact is not None:
            return AuthorizationResult(authorized=True, policy=exact)

        labels = host.split(".")
        # nearest parent first, stopping at the last two labels
        for i in range(1, len(labels) - 1):
            parent = ".".join(labels[i:])
            policy = self._by_domain.get(parent)
            if policy is not None and policy.allow_subdomains:
                return AuthorizationResult(authorized=True, policy=policy)

        return AuthorizationResult(authorized=False)
