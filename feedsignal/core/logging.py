import json
import os
import sys
import threading
from datetime import datetime
from typing import Any, Dict, Protocol, Optional

from loguru import logger


class PipelineObserver(Protocol):
    def on_run_start(self, name: str, run_id: str): ...

    def on_stage_start(self, stage_name: str, config: Dict[str, Any], batch_size: int, flow_id: str): ...

    def on_stage_end(self, stage_name: str, duration: float, tokens: int, batch_json: str, flow_id: str): ...

    def on_artifact(self, label: str, data: Any): ...

    def on_run_end(self, duration: float): ...

    def log_summary(self, summary_text: str): ...


class PipelineLogger:
    """
    loguru-backed observer. With debug on, every stage batch is written to
    logs/pipeline_debug_{run_id}.log and every LLM prompt (with the token usage
    reported for the same call id) to logs/pipeline_debug_{run_id}_prompts.log.
    """

    def __init__(self, run_id: str, debug: bool = True, log_level: str = "INFO", log_dir: Optional[str] = None):
        self.debug = debug
        self.run_id = run_id
        self.log_file = None
        self.prompt_log_file = None
        self._pending_prompt_entries = {}
        self._lock = threading.RLock()

        # Reset loguru to clear default handlers
        logger.remove()
        logger.add(sys.stderr, level=log_level.upper())

        if self.debug:
            if log_dir is None:
                # .../feedsignal/core/logging.py -> Root/logs/
                core_dir = os.path.dirname(os.path.abspath(__file__))
                project_root = os.path.dirname(os.path.dirname(core_dir))
                log_dir = os.path.join(project_root, "logs")
            os.makedirs(log_dir, exist_ok=True)

            self.log_file = os.path.join(log_dir, f"pipeline_debug_{run_id}.log")
            self.prompt_log_file = os.path.join(log_dir, f"pipeline_debug_{run_id}_prompts.log")

            fmt = "<green>{time:H:mm:ss}</green> | {level} | {message}"
            logger.add(self.log_file, format=fmt, level="DEBUG")

    def _format_json(self, data: Any) -> str:
        try:
            s = json.dumps(data, indent=2, default=str, ensure_ascii=False)
            s = s.replace("\\n", "\n      ")
            return s
        except (TypeError, ValueError):
            return str(data)

    def _truncate_large_strings(self, obj: Any, max_len: int = 1000) -> Any:
        if isinstance(obj, str):
            if len(obj) > max_len:
                return obj[:max_len] + f"... [truncated {len(obj) - max_len} chars]"
            return obj
        if isinstance(obj, dict):
            return {k: self._truncate_large_strings(v, max_len) for k, v in obj.items()}
        if isinstance(obj, list):
            return [self._truncate_large_strings(i, max_len) for i in obj]
        return obj

    def _log(self, text: str):
        if not self.debug: return
        logger.debug(text)

    def _append_prompt_log(self, text: str):
        if not self.debug or not self.prompt_log_file:
            return
        try:
            with self._lock:
                with open(self.prompt_log_file, "a", encoding="utf-8") as f:
                    f.write(text + "\n")
        except OSError as e:
            logger.warning(f"Prompt logging error: {e}")

    def _format_tokens_line(self, usage: Optional[Dict[str, Any]]) -> str:
        if not isinstance(usage, dict):
            return "TOKENS: unknown"
        parts = []
        for key in ("prompt", "completion", "total"):
            value = usage.get(key)
            parts.append(f"{key}={value if value is not None else '?'}")
        line = "TOKENS: " + " ".join(parts)
        if usage.get("error"):
            line += f" | ERROR: {usage['error']}"
        return line

    def _write_prompt_entry(self, timestamp: str, content: str, usage: Optional[Dict[str, Any]]):
        msg = (
            f"{timestamp}\n"
            f">>> [LLM Prompt]\n"
            f"{self._format_tokens_line(usage)}\n"
            f"{content}\n"
            f"{'=' * 80}"
        )
        self._append_prompt_log(msg)

    def _flush_prompt_entry(self, usage: Optional[Dict[str, Any]]):
        if not self.debug or not self.prompt_log_file:
            return
        with self._lock:
            call_id = usage.get("call_id") if isinstance(usage, dict) else None
            entry = None
            if call_id and call_id in self._pending_prompt_entries:
                entry = self._pending_prompt_entries.pop(call_id)
            elif call_id is None and len(self._pending_prompt_entries) == 1:
                entry = self._pending_prompt_entries.pop(next(iter(self._pending_prompt_entries)))
            if not entry:
                return
            self._write_prompt_entry(entry["timestamp"], entry["content"], usage)

    def _flush_pending_prompt_entries(self):
        if not self.debug or not self.prompt_log_file:
            return
        with self._lock:
            for entry in list(self._pending_prompt_entries.values()):
                self._write_prompt_entry(entry["timestamp"], entry["content"], usage=None)
            self._pending_prompt_entries.clear()

    # -------------------------------------------------------------------------
    # PUBLIC EVENTS
    # -------------------------------------------------------------------------

    def on_run_start(self, name: str, run_id: str):
        divider = "=" * 80
        logger.info(f"Launching pipeline: {name} (ID={run_id})")
        self._log(f"{divider}\nLAUNCHING PIPELINE: {name} (ID: {run_id})\n{divider}")

    def on_stage_start(self, stage_name: str, config: Dict[str, Any], batch_size: int, flow_id: str):
        safe_conf = {
            k: v for k, v in config.items()
            if k not in ("debug", "llm_settings", "prompt_template", "system_prompt")
        }
        msg = (
            f"START STAGE: {stage_name} | flow={flow_id} | batch={batch_size}\n"
            f"--- SETTINGS ---\n"
            f"{self._format_json(safe_conf)}\n"
            f"----------------"
        )
        self._log(msg)

    def on_stage_end(self, stage_name: str, duration: float, tokens: int, batch_json: str, flow_id: str):
        try:
            clean = self._truncate_large_strings(json.loads(batch_json))
            clean_json_str = self._format_json(clean)
        except ValueError:
            clean_json_str = batch_json

        stats = f"DURATION: {duration:.4f}s"
        if tokens > 0:
            stats += f" | TOKENS: {tokens}"

        divider = "=" * 80
        msg = (
            f"--- BATCH RECORD ---\n"
            f"{clean_json_str}\n"
            f"{divider}\n"
            f"FINISHED: {stage_name} | flow={flow_id} | {stats}\n"
            f"{divider}"
        )
        self._log(msg)

    def on_artifact(self, label: str, data: Any):
        if label == "LLM Prompt":
            if not self.debug:
                return
            with self._lock:
                timestamp = datetime.now().strftime("%H:%M:%S")
                call_id = None
                prompt_data = data
                if isinstance(data, dict):
                    call_id = data.get("call_id")
                    prompt_data = {k: v for k, v in data.items() if k != "call_id"}
                content = self._format_json(prompt_data) if isinstance(prompt_data, (dict, list)) else str(prompt_data)
                if call_id:
                    self._pending_prompt_entries[call_id] = {"timestamp": timestamp, "content": content}
                else:
                    self._write_prompt_entry(timestamp, content, usage=None)
            return

        if label == "LLM Usage Stats":
            self._flush_prompt_entry(data)

        content = self._format_json(data) if isinstance(data, (dict, list)) else str(data)
        self._log(f">>> [ARTIFACT] {label}\n{content}")

    def on_run_end(self, duration: float):
        self._flush_pending_prompt_entries()
        divider = "=" * 80
        self._log(f"{divider}\nTOTAL PIPELINE TIME: {duration:.4f}s\n{divider}")

    def log_summary(self, summary_text: str):
        if not self.debug or not self.log_file: return
        try:
            with open(self.log_file, "a", encoding="utf-8") as f:
                f.write("\n" + summary_text + "\n")
        except OSError as e:
            logger.warning(f"Logging error: {e}")
