"""
Gamma applier module for pushing colour ramps to displays.
Provides an abstraction layer over xrandr and a dry-run backend.
"""

import asyncio
import logging
import re
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Tuple

from .brain import ColorIntensity
from .process import run_command

logger = logging.getLogger(__name__)

XRANDR_TIMEOUT = 5.0

_CONNECTED_RE = re.compile(r"^(\S+)\s+connected", re.MULTILINE)
_GAMMA_RE = re.compile(r"^\s+Gamma:\s+([\d.]+):([\d.]+):([\d.]+)", re.MULTILINE)

# Writer target meaning "put back the recorded gamma"
_RESTORE_ORIGINAL = object()


class GammaApplier(ABC):
    """Abstract base class for display gamma backends."""

    @abstractmethod
    def apply_linear(self, intensity: ColorIntensity) -> None:
        """Apply a linear ramp scaled by the given channel intensities."""
        pass

    @abstractmethod
    def restore_original(self) -> None:
        """Put back the ramp the displays had before we touched them."""
        pass

    def restore_default(self) -> None:
        """Reset displays to an identity ramp."""
        self.apply_linear(ColorIntensity.identity())

    async def drain(self) -> None:
        """Wait until every requested change has reached the displays."""
        pass


class DryRunGammaApplier(GammaApplier):
    """Backend that only logs; used when no display tool is available."""

    def __init__(self):
        self.last_intensity: Optional[ColorIntensity] = None

    def apply_linear(self, intensity: ColorIntensity) -> None:
        self.last_intensity = intensity
        logger.debug(f"[dry-run] Apply gamma {intensity}")

    def restore_original(self) -> None:
        self.last_intensity = None
        logger.debug("[dry-run] Restore original gamma")


class XrandrGammaApplier(GammaApplier):
    """Apply gamma through ``xrandr --gamma`` on every connected output.

    ``apply_linear`` only records the target and returns. A single writer
    task runs the xrandr commands off the control path; targets that arrive
    while it is busy collapse into the latest one.
    """

    def __init__(
        self,
        outputs: Optional[List[str]] = None,
        executable: str = "xrandr",
        timeout: float = XRANDR_TIMEOUT,
    ):
        self.executable = executable
        self.timeout = timeout
        self._outputs = outputs
        self._original: Dict[str, Tuple[float, float, float]] = {}
        self._pending = None
        self._writer: Optional[asyncio.Task] = None
        self.last_intensity: Optional[ColorIntensity] = None

    @property
    def outputs(self) -> List[str]:
        return list(self._outputs or [])

    async def _run(self, *args: str) -> Optional[str]:
        return await run_command(self.executable, *args, timeout=self.timeout)

    async def _discover_outputs(self) -> List[str]:
        """Connected outputs, discovered on first use along with their gamma."""
        if self._outputs is None:
            verbose = await self._run("--verbose")
            if verbose is None:
                return []
            self._outputs = _CONNECTED_RE.findall(verbose)
            self._original = parse_original_gamma(verbose)
            logger.info(f"Found {len(self._outputs)} connected output(s): {self._outputs}")
        return self._outputs

    def _schedule(self, target) -> None:
        self._pending = target
        if self._writer is None or self._writer.done():
            self._writer = asyncio.get_running_loop().create_task(self._write_pending())

    async def _write_pending(self) -> None:
        while self._pending is not None:
            target, self._pending = self._pending, None
            for output in await self._discover_outputs():
                if target is _RESTORE_ORIGINAL:
                    red, green, blue = self._original.get(output, (1.0, 1.0, 1.0))
                else:
                    red, green, blue = target.red, target.green, target.blue
                await self._run("--output", output, "--gamma", f"{red:.4f}:{green:.4f}:{blue:.4f}")

    async def drain(self) -> None:
        if self._writer is not None and not self._writer.done():
            await self._writer

    def apply_linear(self, intensity: ColorIntensity) -> None:
        self._schedule(intensity)
        self.last_intensity = intensity

    def restore_original(self) -> None:
        self._schedule(_RESTORE_ORIGINAL)
        self.last_intensity = None


def parse_original_gamma(verbose_output: str) -> Dict[str, Tuple[float, float, float]]:
    """Map each connected output to the gamma reported by ``xrandr --verbose``.

    xrandr reports gamma as the reciprocal of what ``--gamma`` accepts.
    """
    result = {}
    current = None
    for line in verbose_output.splitlines():
        match = _CONNECTED_RE.match(line)
        if match:
            current = match.group(1)
            continue
        if line and not line[0].isspace():
            current = None
            continue
        gamma = _GAMMA_RE.match(line)
        if current and gamma:
            values = tuple(float(v) for v in gamma.groups())
            result[current] = tuple(1.0 / v if v > 0 else 1.0 for v in values)
    return result


def create_gamma_applier(method: str) -> GammaApplier:
    """Build a gamma backend by name ('xrandr' or 'none')."""
    method = (method or "xrandr").lower()
    if method in ("none", "dry-run", "dryrun"):
        return DryRunGammaApplier()
    if method != "xrandr":
        logger.warning(f"Invalid gamma method '{method}', defaulting to xrandr")
    return XrandrGammaApplier()
