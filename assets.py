from __future__ import annotations

import logging
import time
from typing import Callable

from errors import AssetProcessingFailed, AssetProcessingTimeout
from resources import AssetMetadata, OperationState
from telemetry import start_span


class AssetPipeline:
    """Upload a binary and wait, within a fixed poll budget, for its asset id."""

    def __init__(
        self,
        gateway,
        poll_interval: float,
        max_attempts: int,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.gateway = gateway
        self.poll_interval = max(0.0, float(poll_interval))
        self.max_attempts = max(1, int(max_attempts))
        self._sleep = sleep

    def upload(self, data: bytes, metadata: AssetMetadata) -> int:
        with start_span(
            "asset.upload",
            {
                "asset.file_name": metadata.file_name,
                "asset.size": len(data),
                "asset.content_type": metadata.content_type,
            },
        ) as span:
            handle = self.gateway.upload_asset(data, metadata)
            outcome = handle.outcome
            polls = 0
            while not outcome.done:
                if polls >= self.max_attempts:
                    raise AssetProcessingTimeout(
                        f"Operation polling timed out after {self.max_attempts} attempts"
                    )
                if polls:
                    self._sleep(self.poll_interval)
                outcome = self.gateway.poll_operation(handle)
                polls += 1
                logging.debug(
                    "Asset operation %s poll %s/%s: %s",
                    handle.path,
                    polls,
                    self.max_attempts,
                    outcome.state.value,
                )
            span.set_attribute("asset.polls", polls)

            if outcome.state is OperationState.FAILED:
                raise AssetProcessingFailed(outcome.reason or "Unknown error")
            logging.info("Asset %s uploaded with id %s", metadata.file_name, outcome.asset_id)
            return int(outcome.asset_id)
