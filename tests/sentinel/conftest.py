"""Sentinel fixtures: endpoints and discovered items."""

from collections.abc import Callable

import pytest

from regwatch.storage.database.models import DiscoveryEndpoint, EndpointPriority, ListingStrategy
from regwatch.storage.session import session_scope


@pytest.fixture
def make_endpoint(session_factory) -> Callable[..., DiscoveryEndpoint]:
    def _make(
        path: str = "/vijesti",
        domain: str = "porezna-uprava.gov.hr",
        strategy: ListingStrategy = ListingStrategy.HTML_LIST,
        priority: EndpointPriority = EndpointPriority.MEDIUM,
        **fields,
    ) -> DiscoveryEndpoint:
        with session_scope(session_factory) as db:
            endpoint = DiscoveryEndpoint(
                domain=domain,
                path=path,
                name=f"{domain}{path}",
                listing_strategy=strategy,
                priority=priority,
                meta=fields.pop("meta", {}),
                **fields,
            )
            db.add(endpoint)
            db.flush()
            return endpoint

    return _make
