"""Ring discovery through the external ``cntopo`` tool."""

from __future__ import annotations

import json
import subprocess
import threading
from dataclasses import dataclass, field
from pathlib import Path


class CntopoError(RuntimeError):
    """Raised when ring discovery fails."""


@dataclass
class Ring:
    """A set of device ordinals that form a communication ring."""

    ordinals: list[int] = field(default_factory=list)
    non_conflict_ring_num: int = 0


def build_input(available, size: int) -> dict:
    """Build the request document understood by ``cntopo find``."""
    return {
        "host_list": [
            {"num_devices": size, "white_dev_list": list(available)},
        ]
    }


def parse_output(data) -> list[Ring]:
    """Parse the JSON document written by ``cntopo find`` into rings."""
    try:
        document = json.loads(data)
    except (ValueError, TypeError) as exc:
        raise CntopoError(f"invalid cntopo output: {exc}") from exc
    if document is None:
        return []
    if not isinstance(document, list):
        raise CntopoError("cntopo output is not a list")
    rings = []
    for entry in document:
        if not isinstance(entry, dict):
            raise CntopoError(f"unexpected cntopo entry: {entry!r}")
        info = entry.get("info_by_host") or {}
        nonconflict = entry.get("nonconflict_rings") or {}
        rings.append(
            Ring(
                ordinals=list(info.get("ordinal_list") or []),
                non_conflict_ring_num=int(nonconflict.get("nonconflict_rings_num", 0)),
            )
        )
    return rings


class Cntopo:
    """Runs ``cntopo find`` to list rings among the available devices."""

    def __init__(
        self,
        executable: str = "cntopo",
        input_path=Path("/tmp/cntopo_input.json"),
        output_path=Path("/tmp/cntopo_output.json"),
        rounds: int = 1000000,
    ):
        self.executable = executable
        self.input_path = Path(input_path)
        self.output_path = Path(output_path)
        self.rounds = rounds
        self._lock = threading.Lock()

    def get_rings(self, available, size: int) -> list[Ring]:
        """Return the rings of ``size`` devices formed from ``available``."""
        payload = json.dumps(build_input(available, size), separators=(",", ":"))
        command = [
            self.executable, "find",
            "-I", str(self.input_path),
            "-O", str(self.output_path),
            "-R", str(self.rounds),
            "-C",
        ]
        with self._lock:
            try:
                self.input_path.write_text(payload)
            except OSError as exc:
                raise CntopoError(f"cannot write cntopo input: {exc}") from exc
            try:
                subprocess.run(command, check=True, capture_output=True)
            except (OSError, subprocess.CalledProcessError) as exc:
                raise CntopoError(f"cntopo failed: {exc}") from exc
            try:
                data = self.output_path.read_bytes()
            except OSError as exc:
                raise CntopoError(f"cannot read cntopo output: {exc}") from exc
        return parse_output(data)