#!/usr/bin/env python3
"""
FastAPI web server for LZXAuto.

Provides a web interface to start, monitor, stop and reset compression sessions.
"""

import os
import sys
import threading
import time
import logging
from typing import Optional, Dict, Any, List

from fastapi import FastAPI, HTTPException
from fastapi.responses import HTMLResponse
from pydantic import BaseModel, Field, field_validator

# Add parent directory to path to import lzx_auto
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
from lzx_auto import (
    LZXAutoEngine,
    default_backend,
    default_cache_path,
    load_config,
    parse_log_level,
    reset_cache,
    run_session,
)


class LogCaptureHandler(logging.Handler):
    """Logging handler that keeps the most recent formatted lines in a shared list."""

    def __init__(self, log_store: List[str], store_lock: threading.Lock, max_lines: int = 2000):
        super().__init__()
        self.log_store = log_store
        self.store_lock = store_lock
        self.max_lines = max_lines
        self.setFormatter(logging.Formatter('%(asctime)s - %(levelname)s - %(message)s',
                                            datefmt='%Y-%m-%d %H:%M:%S'))

    def emit(self, record):
        try:
            msg = self.format(record)
        except Exception:
            self.handleError(record)
            return
        with self.store_lock:
            self.log_store.append(msg)
            # Keep only last max_lines to prevent memory issues
            if len(self.log_store) > self.max_lines:
                del self.log_store[:len(self.log_store) - self.max_lines]


app = FastAPI(title="LZXAuto Server", version="1.2.0")

# Backend used for new sessions; replaced in tests
backend_factory = default_backend


class SessionController:
    """Thread-safe holder for the current (or last) session."""

    def __init__(self):
        self._lock = threading.Lock()
        self._status = "idle"  # idle, running, stopping, completed, cancelled, error
        self._engine: Optional[LZXAutoEngine] = None
        self._root: Optional[str] = None
        self._start_time: Optional[float] = None
        self._final_elapsed: Optional[float] = None
        self._error_message: Optional[str] = None
        self._stop_requested = False
        self._logs: List[str] = []
        self._logs_lock = threading.Lock()

    def start(self, root: str):
        with self._lock:
            self._status = "running"
            self._engine = None
            self._root = root
            self._start_time = time.time()
            self._final_elapsed = None
            self._error_message = None
            self._stop_requested = False
        with self._logs_lock:
            self._logs.clear()

    def attach(self, engine: LZXAutoEngine):
        """Called by the session thread once the engine exists."""
        with self._lock:
            self._engine = engine
            stop_requested = self._stop_requested
        if stop_requested:
            engine.cancel()

    def request_stop(self) -> bool:
        with self._lock:
            if self._status != "running":
                return False
            self._status = "stopping"
            self._stop_requested = True
            engine = self._engine
        if engine is not None:
            engine.cancel()
        return True

    def finish(self, status: str, error_message: Optional[str] = None):
        with self._lock:
            self._status = status
            self._error_message = error_message
            if self._start_time:
                self._final_elapsed = time.time() - self._start_time

    def is_active(self) -> bool:
        with self._lock:
            return self._status in ("running", "stopping")

    def get_status(self) -> Dict[str, Any]:
        with self._lock:
            status: Dict[str, Any] = {
                'status': self._status,
                'root': self._root,
                'error_message': self._error_message,
            }
            if self._start_time:
                if self._final_elapsed is not None:
                    status['elapsed_seconds'] = self._final_elapsed
                else:
                    status['elapsed_seconds'] = time.time() - self._start_time
            engine = self._engine
        if engine is not None:
            status['stats'] = engine.stats.as_dict()
        return status

    def log_handler(self) -> LogCaptureHandler:
        return LogCaptureHandler(self._logs, self._logs_lock)

    def get_logs(self, since: Optional[int] = None, max_display_lines: int = 1000) -> List[str]:
        """Get logs, optionally starting from a specific index.

        Args:
            since: Optional line index to start from
            max_display_lines: Maximum number of lines to return
        """
        with self._logs_lock:
            if since is not None and 0 <= since < len(self._logs):
                logs = self._logs[since:]
            elif since is not None and since >= len(self._logs):
                logs = []
            else:
                logs = list(self._logs)

        if len(logs) > max_display_lines:
            logs = logs[-max_display_lines:]
        return logs

    def get_log_count(self) -> int:
        with self._logs_lock:
            return len(self._logs)


# Global state
session = SessionController()
session_thread: Optional[threading.Thread] = None
session_lock = threading.Lock()


class RunRequest(BaseModel):
    """Request model for starting a session."""
    folder: str = Field(..., description="Root folder to compress recursively")
    config_path: Optional[str] = Field(default=None, description="Skip-extension config (None for default)")
    cache_path: Optional[str] = Field(default=None, description="Cache file (None for default location)")
    workers: Optional[int] = Field(default=None, ge=1, description="Number of worker threads (None for auto)")
    log_level: str = Field(default="info", description="none, general, info or debug")

    @field_validator("log_level")
    @classmethod
    def _check_log_level(cls, value: str) -> str:
        parse_log_level(value)
        return value.strip().lower()


class ResetRequest(BaseModel):
    cache_path: Optional[str] = Field(default=None, description="Cache file (None for default location)")


def run_session_thread(request: RunRequest):
    """Run one session in a background thread."""
    log_handler = session.log_handler()
    root_logger = logging.getLogger()
    root_logger.addHandler(log_handler)
    root_logger.setLevel(parse_log_level(request.log_level))

    try:
        config = load_config(request.config_path)
        stats = run_session(
            request.folder,
            config=config,
            cache_file=request.cache_path or default_cache_path(),
            backend=backend_factory(),
            workers=request.workers,
            show_progress=False,
            on_engine=session.attach,
        )
        session.finish(stats.status)
    except Exception as e:
        session.finish("error", str(e))
        logging.error(f"Session error: {e}", exc_info=True)
    finally:
        root_logger.removeHandler(log_handler)
        log_handler.close()


@app.get("/", response_class=HTMLResponse)
async def root():
    """Serve simple HTML UI."""
    html = """
    <!DOCTYPE html>
    <html>
    <head>
        <title>LZXAuto</title>
        <style>
            body { font-family: Arial, sans-serif; max-width: 1000px; margin: 0 auto; padding: 20px; }
            .container { background: #f5f5f5; padding: 20px; border-radius: 8px; margin-bottom: 20px; }
            label { display: block; margin-top: 10px; font-weight: bold; }
            input, select { width: 100%; padding: 8px; margin-top: 5px; box-sizing: border-box; }
            button { background: #4CAF50; color: white; padding: 10px 20px; border: none; border-radius: 4px; cursor: pointer; margin-top: 10px; }
            button.stop { background: #f44336; }
            button.reset { background: #607d8b; }
            pre { background: #1e1e1e; color: #d4d4d4; padding: 15px; border-radius: 4px; max-height: 400px; overflow-y: auto; }
        </style>
    </head>
    <body>
        <h1>LZXAuto</h1>
        <div class="container">
            <form id="runForm">
                <label>Folder Path:</label>
                <input type="text" id="folder" value="C:\\" required>
                <label>Workers (leave empty for auto):</label>
                <input type="number" id="workers" min="1">
                <label>Log level:</label>
                <select id="log_level">
                    <option value="general">General</option>
                    <option value="info" selected>Info</option>
                    <option value="debug">Debug</option>
                </select>
                <button type="submit">Start</button>
                <button type="button" class="stop" id="stopBtn">Stop</button>
                <button type="button" class="reset" id="resetBtn">Reset cache</button>
            </form>
        </div>
        <div class="container">
            <h2>Status: <span id="statusText">-</span></h2>
            <pre id="stats"></pre>
            <pre id="logs"></pre>
        </div>
        <script>
            async function post(url, body) {
                const response = await fetch(url, {
                    method: 'POST',
                    headers: { 'Content-Type': 'application/json' },
                    body: JSON.stringify(body || {})
                });
                if (!response.ok) {
                    const error = await response.json();
                    alert('Error: ' + (error.detail || response.statusText));
                }
            }
            async function refresh() {
                const status = await (await fetch('/api/status')).json();
                document.getElementById('statusText').textContent = status.status.toUpperCase();
                document.getElementById('stats').textContent = JSON.stringify(status.stats || {}, null, 2);
                const logs = await (await fetch('/api/logs')).json();
                const logWindow = document.getElementById('logs');
                logWindow.textContent = logs.logs.join('\\n');
                logWindow.scrollTop = logWindow.scrollHeight;
            }
            document.getElementById('runForm').addEventListener('submit', (e) => {
                e.preventDefault();
                const workers = document.getElementById('workers').value;
                post('/api/run', {
                    folder: document.getElementById('folder').value,
                    workers: workers ? parseInt(workers) : null,
                    log_level: document.getElementById('log_level').value
                });
            });
            document.getElementById('stopBtn').addEventListener('click', () => post('/api/stop'));
            document.getElementById('resetBtn').addEventListener('click', () => post('/api/reset'));
            refresh();
            setInterval(refresh, 2000);
        </script>
    </body>
    </html>
    """
    return html


@app.post("/api/run")
async def start_session(request: RunRequest):
    """Start a compression session."""
    global session_thread

    with session_lock:
        if session.is_active():
            raise HTTPException(status_code=409, detail="A session is already running")

        if not os.path.isdir(request.folder):
            raise HTTPException(status_code=400, detail=f"Folder does not exist: {request.folder}")

        session.start(os.path.abspath(request.folder))
        session_thread = threading.Thread(
            target=run_session_thread,
            args=(request,),
            daemon=True
        )
        session_thread.start()

        return {"message": "Session started", "status": "running"}


@app.get("/api/status")
async def get_status():
    """Get current session status and live counters."""
    return session.get_status()


@app.post("/api/stop")
async def stop_session():
    """Request cancellation of the running session."""
    with session_lock:
        if not session.request_stop():
            raise HTTPException(status_code=409, detail="No session is currently running")
        return {"message": "Stop requested", "status": "stopping"}


@app.post("/api/reset")
async def reset(request: Optional[ResetRequest] = None):
    """Discard the cache so the next session examines every file again."""
    with session_lock:
        if session.is_active():
            raise HTTPException(status_code=409, detail="Cannot reset the cache while a session is running")
        cache_path = (request.cache_path if request else None) or default_cache_path()
        try:
            reset_cache(cache_path)
        except (OSError, RuntimeError) as e:
            raise HTTPException(status_code=500, detail=f"Cache reset failed: {e}")
        return {"message": "Cache reset", "cache_path": cache_path}


@app.get("/api/logs")
async def get_logs(since: Optional[int] = None):
    """Get session logs, optionally starting from a specific line index."""
    logs = session.get_logs(since=since)
    return {
        "logs": logs,
        "total_lines": session.get_log_count(),
        "since": since or 0
    }


if __name__ == "__main__":
    import uvicorn
    port = int(os.environ.get("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
