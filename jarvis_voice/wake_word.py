#!/usr/bin/env python3
"""Wake-word and endpoint recognizers.

The orchestrator only sees the two small interfaces below. The OpenWakeWord
implementation owns its own 16 kHz input stream while the orchestrator is in
WAKE_LISTENING; inference runs on a worker thread and detections are handed
back to the event loop with ``call_soon_threadsafe``.

OpenWakeWord expects 80 ms chunks (1280 samples @ 16 kHz, int16).
"""

import asyncio
import queue
import threading
from typing import Callable, Optional

import numpy as np
import sounddevice as sd

from jarvis_voice.errors import CaptureFailed, EngineInitFailed, MicPermissionDenied
from jarvis_voice.utils import jarvis_log

OWW_SAMPLE_RATE = 16000
OWW_CHUNK = 1280

WakeCallback = Callable[[str], None]


class WakeWordRecognizer:
    """Emits a detection whenever the wake word is heard."""

    async def start(self, on_detected: WakeCallback) -> None:
        """Begin listening.

        Raises:
            EngineInitFailed: the model could not be loaded.
            MicPermissionDenied / CaptureFailed: the input stream could not be opened.
        """
        raise NotImplementedError

    async def stop(self) -> None:
        raise NotImplementedError

    @property
    def listening(self) -> bool:
        return False


class EndpointRecognizer:
    """Secondary end-of-utterance signal, independent of the VAD."""

    async def start(self, on_end_of_utterance: Callable[[], None]) -> None:
        raise NotImplementedError

    async def stop(self) -> None:
        raise NotImplementedError


class OpenWakeWordRecognizer(WakeWordRecognizer):
    """Detects wake words using OpenWakeWord ONNX models."""

    def __init__(
        self,
        model: str = "hey_jarvis",
        threshold: float = 0.5,
        device: Optional[str] = None,
        inference_framework: str = "onnx",
    ) -> None:
        self.model_name = model
        self.threshold = threshold
        self.device = device
        self.inference_framework = inference_framework
        self._oww_model = None
        self._stream: Optional[sd.InputStream] = None
        self._chunks: "queue.Queue[Optional[np.ndarray]]" = queue.Queue(maxsize=50)
        self._worker: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._on_detected: Optional[WakeCallback] = None

    def load(self) -> None:
        """Load the wake word model, downloading the shared base models if needed."""
        if self._oww_model is not None:
            return
        try:
            from openwakeword.model import Model as OWWModel
            from openwakeword.utils import download_models

            # Shared preprocessing models (melspectrogram + embedding)
            download_models()
            self._oww_model = OWWModel(
                wakeword_models=[self.model_name],
                inference_framework=self.inference_framework,
            )
        except Exception as e:
            self._oww_model = None
            raise EngineInitFailed(f"Failed to load wake word model '{self.model_name}': {e}") from e
        jarvis_log("OWW", f"Loaded wake word model: {self.model_name}")

    @property
    def is_loaded(self) -> bool:
        return self._oww_model is not None

    @property
    def listening(self) -> bool:
        return self._stream is not None

    def process_chunk(self, audio_chunk: np.ndarray) -> Optional[str]:
        """Run one chunk through the model; returns the detected model name or None."""
        if self._oww_model is None:
            return None
        self._oww_model.predict(audio_chunk)
        for model_name in self._oww_model.prediction_buffer:
            scores = list(self._oww_model.prediction_buffer[model_name])
            if scores and scores[-1] > self.threshold:
                jarvis_log("OWW", f"Wake word detected: {model_name} "
                                  f"(score={scores[-1]:.3f}, threshold={self.threshold})")
                self._oww_model.reset()
                return model_name
        return None

    def _callback(self, indata, frames, time_info, status):
        try:
            self._chunks.put_nowait(indata[:, 0].copy())
        except queue.Full:
            pass

    def _inference_loop(self):
        while not self._stop_event.is_set():
            try:
                chunk = self._chunks.get(timeout=0.1)
            except queue.Empty:
                continue
            if chunk is None:
                break
            try:
                detected = self.process_chunk(chunk)
            except Exception as e:
                jarvis_log("OWW", f"Prediction error: {e}", level="ERROR")
                continue
            if detected and self._loop is not None and not self._loop.is_closed():
                self._loop.call_soon_threadsafe(self._deliver, detected)

    def _deliver(self, model_name: str):
        if self._stream is not None and self._on_detected is not None:
            self._on_detected(model_name)

    async def start(self, on_detected: WakeCallback) -> None:
        if self._stream is not None:
            return
        self._loop = asyncio.get_running_loop()
        self._on_detected = on_detected
        if self._oww_model is None:
            await self._loop.run_in_executor(None, self.load)
        self._oww_model.reset()
        self._stop_event.clear()
        self._chunks = queue.Queue(maxsize=50)

        try:
            stream = sd.InputStream(
                samplerate=OWW_SAMPLE_RATE,
                channels=1,
                dtype='int16',
                blocksize=OWW_CHUNK,
                device=self.device,
                callback=self._callback,
            )
            stream.start()
        except sd.PortAudioError as e:
            if "denied" in str(e).lower() or "permission" in str(e).lower():
                raise MicPermissionDenied(f"Microphone access denied: {e}") from e
            raise CaptureFailed(f"Wake word input failed: {e}") from e

        self._worker = threading.Thread(target=self._inference_loop, daemon=True, name="jarvis-oww")
        self._worker.start()
        self._stream = stream
        jarvis_log("OWW", "Listening for wake word")

    async def stop(self) -> None:
        stream, self._stream = self._stream, None
        self._stop_event.set()
        try:
            self._chunks.put_nowait(None)
        except queue.Full:
            pass
        if stream is not None:
            try:
                stream.stop()
                stream.close()
            except sd.PortAudioError as e:
                jarvis_log("OWW", f"Error closing input: {e}", level="WARNING")
        worker, self._worker = self._worker, None
        if worker is not None:
            await asyncio.get_running_loop().run_in_executor(None, worker.join, 1.0)
        if stream is not None:
            jarvis_log("OWW", "Wake word listening stopped", level="DEBUG")
