"""FastAPI server — recording control endpoints, history and live level meter."""

import asyncio
import json
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from api_client import ResilientClient
from audio_capture import CaptureAdapter
from config import HOST, PORT, HISTORY_PATH, EXPORT_DIR
from errors import AcquisitionError, ArtifactTooSmallError, SessionStateError
from file_writer import MarkdownExporter
from history import HistoryStore
from pipeline import TranscriptionPipeline
from recorder import Recorder, RecordingMode, AudioSource
from recorder_config import RecorderConfig
from transcriber import TranscriptionService


# --- App state ---

class AppState:
    """Mutable application state shared across endpoints.

    Components are built on first use so tests can swap in fakes.
    """

    def __init__(self):
        self.config: RecorderConfig | None = None
        self.recorder: Recorder | None = None
        self.pipeline: TranscriptionPipeline | None = None
        self.history: HistoryStore | None = None
        self.processing = False
        self.last_entry: dict | None = None
        self.level_clients: set[WebSocket] = set()

    def ensure(self):
        if self.config is None:
            self.config = RecorderConfig()
        if self.history is None:
            self.history = HistoryStore(HISTORY_PATH)
        if self.recorder is None:
            self.recorder = Recorder(
                self.config,
                CaptureAdapter(self.config),
                on_finished=self._on_finished,
                on_levels=self._on_levels,
            )
        if self.pipeline is None:
            self.pipeline = TranscriptionPipeline(
                TranscriptionService(self.config, ResilientClient()),
                self.history,
                exporter=MarkdownExporter(EXPORT_DIR),
                config=self.config,
            )
        return self

    async def run_pipeline(self, result) -> dict:
        self.processing = True
        try:
            entry = await self.pipeline.process(result)
        finally:
            self.processing = False
        self.last_entry = entry.to_dict()
        return self.last_entry

    async def _on_finished(self, result, error):
        """Stop triggered by the shared source closing or a lost device."""
        if result is None:
            print(f"  [server] Recording ended without output: {error}")
            return
        await self.run_pipeline(result)

    def _on_levels(self, levels: dict):
        if self.level_clients:
            asyncio.get_running_loop().create_task(self._broadcast(levels))

    async def _broadcast(self, levels: dict):
        message = json.dumps({"type": "levels", "levels": levels})
        stale = set()
        for ws in self.level_clients:
            try:
                await ws.send_text(message)
            except (WebSocketDisconnect, RuntimeError):
                stale.add(ws)
        self.level_clients -= stale


app_state = AppState()


# --- FastAPI app ---

@asynccontextmanager
async def lifespan(app: FastAPI):
    app_state.ensure()
    yield
    # Cleanup on shutdown
    if app_state.recorder:
        await app_state.recorder.shutdown()
    if app_state.pipeline:
        await app_state.pipeline.aclose()


app = FastAPI(lifespan=lifespan)


def _state_error(e: SessionStateError) -> JSONResponse:
    return JSONResponse({"error": str(e)}, status_code=409)


def _acquisition_error(e: AcquisitionError) -> JSONResponse:
    return JSONResponse(
        {"error": str(e), "kind": e.kind.value, "remediation": e.remediation},
        status_code=400,
    )


async def _json_body(request: Request) -> dict:
    try:
        body = await request.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


# --- Routes ---

@app.get("/api/status")
async def status():
    """Return current recorder state."""
    recorder = app_state.ensure().recorder
    session = recorder.session
    return {
        "state": recorder.state.value,
        "elapsed_ms": recorder.elapsed_ms,
        "mode": session.mode.value if session else None,
        "mic_only": session.mic_only if session else False,
        "processing": app_state.processing,
    }


@app.get("/api/sources")
async def sources():
    """List screens, windows and loopback devices that can be shared."""
    catalog = app_state.ensure().recorder.adapter.catalog
    try:
        found = await asyncio.to_thread(catalog.list_sources)
    except AcquisitionError as e:
        return _acquisition_error(e)
    return [{"id": s.id, "name": s.name, "kind": s.kind} for s in found]


@app.post("/api/start")
async def start(request: Request):
    """Acquire sources and start recording."""
    recorder = app_state.ensure().recorder
    body = await _json_body(request)
    try:
        mode = RecordingMode(body.get("mode", RecordingMode.SINGLE.value))
        source = AudioSource(body.get("source", AudioSource.BOTH.value))
    except ValueError as e:
        return JSONResponse({"error": str(e)}, status_code=400)
    continue_without_audio = bool(body.get("continue_without_audio", False))

    try:
        session = await recorder.start(
            mode=mode,
            source=source,
            source_id=body.get("source_id"),
            select_source=lambda found: found[0] if found else None,
            confirm_without_audio=lambda message: continue_without_audio,
        )
    except SessionStateError as e:
        return _state_error(e)
    except AcquisitionError as e:
        return _acquisition_error(e)
    except ValueError as e:
        return JSONResponse({"error": str(e)}, status_code=400)

    return {"status": "recording", "id": session.id, "mode": session.mode.value, "mic_only": session.mic_only}


@app.post("/api/pause")
async def pause():
    try:
        app_state.ensure().recorder.pause()
    except SessionStateError as e:
        return _state_error(e)
    return {"status": "paused", "elapsed_ms": app_state.recorder.elapsed_ms}


@app.post("/api/resume")
async def resume():
    try:
        app_state.ensure().recorder.resume()
    except SessionStateError as e:
        return _state_error(e)
    return {"status": "recording"}


@app.post("/api/stop")
async def stop():
    """Stop recording, then transcribe, summarize and save."""
    recorder = app_state.ensure().recorder
    if recorder.session is None:
        return JSONResponse({"error": "Not recording"}, status_code=409)
    try:
        result = await recorder.stop()
    except ArtifactTooSmallError as e:
        return {"status": "too_short", "duration_ms": e.duration_ms, "minimum_ms": e.minimum_ms}
    if result is None:
        return JSONResponse({"error": "Not recording"}, status_code=409)

    entry = await app_state.run_pipeline(result)
    return {"status": "stopped", "entry": entry}


@app.get("/api/history")
async def history():
    return [e.to_dict() for e in app_state.ensure().history.entries()]


@app.get("/api/history/{entry_id}")
async def history_entry(entry_id: str):
    entry = app_state.ensure().history.get(entry_id)
    if entry is None:
        return JSONResponse({"error": "Not found"}, status_code=404)
    return entry.to_dict()


# --- WebSocket for live levels ---

@app.websocket("/ws/levels")
async def ws_levels(ws: WebSocket):
    """Streams per-source peak levels while recording."""
    await ws.accept()
    app_state.level_clients.add(ws)
    try:
        while True:
            # Keep connection alive, listen for client messages (pings)
            await ws.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        app_state.level_clients.discard(ws)


# --- Entry point ---

if __name__ == "__main__":
    import uvicorn
    print(f"Starting meeting-recorder server at http://{HOST}:{PORT}")
    uvicorn.run(app, host=HOST, port=PORT)
