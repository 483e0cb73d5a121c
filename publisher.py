from __future__ import annotations

import logging
from pathlib import Path
from typing import List

import requests

from errors import RbxSyncError
from fingerprint import read_binary
from manifest import PlaceConfig, ProjectConfig
from reconciler import ActionType, RunReport
from resources import ResourceKind
from telemetry import start_span


class PlacePublisher:
    """Push place files for every place declared with `publish: true`.

    Places are addressed by their configured id: no name matching, no lock
    entries, and no diffing. Every run republishes.
    """

    def __init__(self, gateway, project: ProjectConfig, *, dry_run: bool = False) -> None:
        self.gateway = gateway
        self.project = project
        self.dry_run = dry_run
        self.report = RunReport(dry_run=dry_run)

    def targets(self) -> List[PlaceConfig]:
        return [place for place in self.project.places if place.publish]

    def _place_path(self, place: PlaceConfig) -> Path:
        path = Path(place.file_path)
        return path if path.is_absolute() else self.project.root / path

    def run(self) -> RunReport:
        places = self.targets()
        if not places:
            logging.info("No places marked for publishing")
            return self.report
        for place in places:
            self._publish(place)
        logging.info(
            "Place summary: %s published, %s failed",
            self.report.count(ResourceKind.PLACE, ActionType.PUBLISH),
            self.report.count(ResourceKind.PLACE, ActionType.FAILED),
        )
        return self.report

    def _publish(self, place: PlaceConfig) -> None:
        name = str(place.place_id)
        path = self._place_path(place)
        with start_span(
            "place.publish",
            {"roblox.place_id": place.place_id, "sync.dry_run": self.dry_run},
        ) as span:
            try:
                data = read_binary(path)
            except RbxSyncError as exc:
                logging.error("[FAILED] Place %s: %s", name, exc)
                self.report.record(ResourceKind.PLACE, name, ActionType.FAILED, str(exc))
                return
            span.set_attribute("place.size", len(data))

            if self.dry_run:
                logging.info("[PUBLISH] Place %s from %s (dry run)", name, place.file_path)
                self.report.record(ResourceKind.PLACE, name, ActionType.PUBLISH, place.file_path)
                return

            try:
                version = self.gateway.publish_place(place.place_id, data)
            except (RbxSyncError, requests.RequestException) as exc:
                logging.error("[FAILED] Place %s: %s", name, exc)
                self.report.record(ResourceKind.PLACE, name, ActionType.FAILED, str(exc))
                return
            detail = f"version {version}" if version is not None else place.file_path
            logging.info("[PUBLISH] Place %s: %s", name, detail)
            self.report.record(ResourceKind.PLACE, name, ActionType.PUBLISH, detail)
