"""Wiring for the scheduler's components.

``build_scheduler`` is called once by the API lifespan and once by the
standalone worker; every request handler and work item reaches the
components through the returned ``Scheduler``.
"""

from __future__ import annotations

from dataclasses import dataclass

import httpx

from flowsched.connectors.provider_client import ProviderClient
from flowsched.registry import SchedulerConfig
from flowsched.runtime.dispatcher import Dispatcher
from flowsched.runtime.finalizer import Finalizer
from flowsched.runtime.node_executor import NodeExecutor
from flowsched.services.admission_service import AdmissionController
from flowsched.services.credentials import CredentialResolver
from flowsched.services.storage_service import ResultStorage


@dataclass
class Scheduler:
    config: SchedulerConfig
    admission: AdmissionController
    credentials: CredentialResolver
    client: ProviderClient
    executor: NodeExecutor
    finalizer: Finalizer
    dispatcher: Dispatcher
    storage: ResultStorage

    async def close(self) -> None:
        await self.client.close()
        await self.storage.close()


def build_scheduler(
    config: SchedulerConfig,
    transport: httpx.AsyncBaseTransport | None = None,
) -> Scheduler:
    admission = AdmissionController(config)
    credentials = CredentialResolver(config)
    client = ProviderClient(config, transport=transport)
    executor = NodeExecutor(config, admission, credentials, client)
    finalizer = Finalizer()
    return Scheduler(
        config=config,
        admission=admission,
        credentials=credentials,
        client=client,
        executor=executor,
        finalizer=finalizer,
        dispatcher=Dispatcher(config, executor, finalizer),
        storage=ResultStorage(config, transport=transport),
    )
