from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Iterable, Mapping

from ..core.models import Fact, FactSet, Host, Selector
from .base import Probe, ProbeError, Transport, default_probes
from .transport import TransportError, transport_for

logger = logging.getLogger(__name__)

DEFAULT_PROBE_CONCURRENCY = 16


class FactUnavailable(Exception):
    """Raised when a single selector cannot be observed."""

    def __init__(self, selector: Selector, reason: str) -> None:
        super().__init__(f"{selector}: {reason}")
        self.selector = selector
        self.reason = reason


class FactCollector:
    """Gathers current facts for a host, one probe per selector kind.

    Probes are read-only, so independent selectors are observed concurrently
    (bounded per host). A failing probe only marks its own selector as
    unavailable.
    """

    def __init__(
        self,
        probes: Mapping[str, Probe] | None = None,
        *,
        max_concurrency: int = DEFAULT_PROBE_CONCURRENCY,
        transport_factory: Callable[[Host], Transport] = transport_for,
    ) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self._probes = dict(probes) if probes is not None else default_probes()
        self._max_concurrency = max_concurrency
        self._transport_factory = transport_factory

    @property
    def kinds(self) -> set[str]:
        return set(self._probes)

    def collect(self, host: Host, selectors: Iterable[Selector]) -> FactSet:
        selectors = list(dict.fromkeys(selectors))
        facts = FactSet(host=host.name)

        if not host.reachable:
            for selector in selectors:
                facts.mark_unavailable(selector, "host marked unreachable by inventory")
            return facts
        if not selectors:
            return facts

        transport = self._transport_factory(host)
        workers = min(self._max_concurrency, len(selectors))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"probe-{host.name}") as pool:
            futures = [(s, pool.submit(self._observe, transport, host, s)) for s in selectors]
            for selector, future in futures:
                try:
                    facts.add(future.result())
                except FactUnavailable as e:
                    logger.warning("%s: fact unavailable for %s: %s", host.name, selector, e.reason)
                    facts.mark_unavailable(selector, e.reason)

        logger.debug(
            "%s: collected %d facts, %d unavailable", host.name, len(facts.facts), len(facts.unavailable)
        )
        return facts

    def observe(self, host: Host, selector: Selector) -> Fact:
        """Probe a single selector. Raises FactUnavailable."""
        if not host.reachable:
            raise FactUnavailable(selector, "host marked unreachable by inventory")
        return self._observe(self._transport_factory(host), host, selector)

    def _observe(self, transport: Transport, host: Host, selector: Selector) -> Fact:
        probe = self._probes.get(selector.kind)
        if probe is None:
            raise FactUnavailable(selector, f"no probe registered for kind '{selector.kind}'")
        try:
            value = probe.observe(transport, selector.target)
        except (ProbeError, TransportError) as e:
            raise FactUnavailable(selector, str(e)) from e
        return Fact(
            selector=selector,
            value=value,
            source=f"{getattr(probe, 'name', selector.kind)}:{host.name}",
        )
