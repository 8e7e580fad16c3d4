from __future__ import annotations

import logging
import math
import shutil
import subprocess
import wave
from pathlib import Path
from typing import Iterable, Optional, Protocol, Sequence, Tuple

log = logging.getLogger("bloodalert.tone")

# (frequency Hz, seconds): the short rising/falling alert chirp
ALERT_STEPS: Tuple[Tuple[float, float], ...] = ((800.0, 0.1), (1000.0, 0.1), (800.0, 0.1))

DEFAULT_PLAYERS: Tuple[str, ...] = ("aplay", "paplay", "afplay")


class AlertTone(Protocol):
    def play(self) -> None: ...

    def stop(self) -> None: ...


class NullTone:
    def play(self) -> None:
        return None

    def stop(self) -> None:
        return None


def write_alert_wav(
    path: Path,
    steps: Iterable[Tuple[float, float]],
    sample_rate: int,
    start_gain: float = 0.1,
    end_gain: float = 0.01,
) -> None:
    """
    Stepped sine tone with an exponential gain ramp across the whole chirp.
    Mono, 16-bit.
    """
    steps = list(steps)
    total = sum(s for _, s in steps)
    if total <= 0:
        raise ValueError("write_alert_wav: empty tone")
    g0 = max(1e-4, min(1.0, start_gain))
    g1 = max(1e-4, min(1.0, end_gain))

    path.parent.mkdir(parents=True, exist_ok=True)
    frames = bytearray()
    t_abs = 0.0
    phase = 0.0
    for freq_hz, seconds in steps:
        n = int(seconds * sample_rate)
        for _ in range(n):
            gain = g0 * (g1 / g0) ** (t_abs / total)
            s = int(math.sin(phase) * 32767 * gain)
            frames += s.to_bytes(2, "little", signed=True)
            # carry phase across steps so frequency changes don't click
            phase += 2 * math.pi * freq_hz / sample_rate
            t_abs += 1.0 / sample_rate

    with wave.open(str(path), "wb") as wf:
        wf.setnchannels(1)
        wf.setsampwidth(2)
        wf.setframerate(sample_rate)
        wf.writeframes(bytes(frames))


class WavTone:
    """
    Renders the alert chirp once, then plays it through the first available
    command-line player. Everything here is best-effort: a host without audio
    just logs and carries on.
    """

    def __init__(
        self,
        wav_path: Path,
        *,
        sample_rate: int = 22050,
        steps: Sequence[Tuple[float, float]] = ALERT_STEPS,
        players: Sequence[str] = DEFAULT_PLAYERS,
    ) -> None:
        self.wav_path = Path(wav_path)
        self.sample_rate = int(sample_rate)
        self.steps = tuple(steps)
        self.players = tuple(players)
        self._proc: Optional[subprocess.Popen[bytes]] = None

    def _player(self) -> Optional[str]:
        for name in self.players:
            exe = shutil.which(name)
            if exe:
                return exe
        return None

    def _ensure_wav(self) -> None:
        if not self.wav_path.exists():
            write_alert_wav(self.wav_path, self.steps, self.sample_rate)

    def play(self) -> None:
        self.stop()
        try:
            self._ensure_wav()
            exe = self._player()
            if exe is None:
                log.info("No audio player found (%s); alert tone skipped", ",".join(self.players))
                return
            self._proc = subprocess.Popen(
                [exe, str(self.wav_path)],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
            )
        except Exception as e:
            log.warning("Could not play alert tone: %s", e)
            self._proc = None

    def stop(self) -> None:
        proc = self._proc
        self._proc = None
        if proc is None or proc.poll() is not None:
            return
        try:
            proc.terminate()
        except OSError:
            pass
