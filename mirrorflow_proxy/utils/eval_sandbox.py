"""
Sandboxed execution of eval-chain obfuscated scripts.

Every stage runs in a fresh V8 isolate (mini-racer) under a wall-clock budget
and a heap limit. ``eval`` is replaced by a hook that records its argument and
returns ``undefined``, so nested payloads never execute in place: they are queued and
walked breadth-first, bounded by depth, stage count and a seen-set on the exact
text.
"""

import json
import logging
import re
from collections import deque
from dataclasses import dataclass, field
from typing import Iterable, List, Optional
from urllib.parse import urlsplit

from py_mini_racer import JSOOMException, JSTimeoutException, MiniRacer

from mirrorflow_proxy.configs import settings

logger = logging.getLogger(__name__)

EVAL_CALL_RE = re.compile(r"\beval\s*\(")
SOURCE_ASSIGN_RE = re.compile(r"\bsource\s*=")

SANDBOX_PRELUDE = r"""
var __mf = {captured: [], logs: []};
(function (g) {
  var B64 = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789+/";
  var NativeFunction = g.Function;
  function noop() {}
  function text(value) {
    try { return typeof value === "string" ? value : JSON.stringify(value); } catch (e) { return String(value); }
  }
  function log() {
    var parts = [];
    for (var i = 0; i < arguments.length; i++) parts.push(text(arguments[i]));
    __mf.logs.push(parts.join(" "));
  }
  function element() {
    return {
      style: {}, dataset: {}, children: [], childNodes: [], innerHTML: "", textContent: "",
      appendChild: noop, removeChild: noop, insertBefore: noop, remove: noop, click: noop,
      setAttribute: noop, removeAttribute: noop, getAttribute: function () { return null; },
      addEventListener: noop, removeEventListener: noop
    };
  }
  function storage() {
    var items = {};
    return {
      getItem: function (k) { return items.hasOwnProperty(k) ? items[k] : null; },
      setItem: function (k, v) { items[k] = String(v); },
      removeItem: function (k) { delete items[k]; },
      clear: function () { items = {}; }
    };
  }
  function list() { return []; }

  g.window = g; g.self = g; g.top = g; g.parent = g;
  g.document = {
    cookie: "", referrer: "", title: "", readyState: "complete",
    body: element(), head: element(), documentElement: element(), currentScript: element(),
    createElement: element, createTextNode: element, getElementById: element, querySelector: element,
    querySelectorAll: list, getElementsByTagName: list, getElementsByClassName: list,
    addEventListener: noop, removeEventListener: noop, write: noop, writeln: noop
  };
  g.navigator = {
    userAgent: __MF_USER_AGENT__, language: "en-US", languages: ["en-US", "en"],
    platform: "Win32", vendor: "Google Inc.", cookieEnabled: true, webdriver: false, plugins: []
  };
  g.location = __MF_LOCATION__;
  g.location.reload = noop; g.location.assign = noop; g.location.replace = noop;
  g.history = {pushState: noop, replaceState: noop, back: noop};
  g.screen = {width: 1920, height: 1080, availWidth: 1920, availHeight: 1040};
  g.localStorage = storage(); g.sessionStorage = storage();
  g.console = {log: log, info: log, warn: log, error: log, debug: log};
  g.setTimeout = function () { return 0; }; g.setInterval = function () { return 0; };
  g.clearTimeout = noop; g.clearInterval = noop;
  g.addEventListener = noop; g.removeEventListener = noop;
  g.alert = noop;

  g.atob = function (input) {
    var str = String(input).replace(/[\s=]+/g, "").replace(/-/g, "+").replace(/_/g, "/");
    var out = "", buffer = 0, bits = 0;
    for (var i = 0; i < str.length; i++) {
      var idx = B64.indexOf(str.charAt(i));
      if (idx < 0) throw new Error("InvalidCharacterError: atob");
      buffer = ((buffer << 6) | idx) & 0xffffff;
      bits += 6;
      if (bits >= 8) {
        bits -= 8;
        out += String.fromCharCode((buffer >> bits) & 0xff);
      }
    }
    return out;
  };
  g.btoa = function (input) {
    var str = String(input), out = "";
    for (var i = 0; i < str.length; i += 3) {
      var a = str.charCodeAt(i), b = str.charCodeAt(i + 1), c = str.charCodeAt(i + 2);
      if (a > 255 || b > 255 || c > 255) throw new Error("InvalidCharacterError: btoa");
      var n = (a << 16) | ((b || 0) << 8) | (c || 0);
      out += B64.charAt((n >> 18) & 63) + B64.charAt((n >> 12) & 63) +
        (i + 1 < str.length ? B64.charAt((n >> 6) & 63) : "=") +
        (i + 2 < str.length ? B64.charAt(n & 63) : "=");
    }
    return out;
  };

  g.eval = function (code) {
    if (typeof code === "string") __mf.captured.push(code);
    return undefined;
  };
  var HookedFunction = function () {
    if (arguments.length) {
      var body = arguments[arguments.length - 1];
      if (typeof body === "string") __mf.captured.push(body);
    }
    return NativeFunction.apply(this, arguments);
  };
  HookedFunction.prototype = NativeFunction.prototype;
  g.Function = HookedFunction;
})(globalThis);
"""

READ_BACK = "JSON.stringify({captured: __mf.captured, logs: __mf.logs.slice(0, 6)})"


@dataclass
class EvalStage:
    input_snippet: str
    depth: int
    captured_count: int = 0
    logs_snippet: str = ""
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "input_snippet": self.input_snippet,
            "depth": self.depth,
            "captured_count": self.captured_count,
            "logs_snippet": self.logs_snippet,
            "error": self.error,
        }


@dataclass
class EvalChainResult:
    captured: List[str] = field(default_factory=list)
    stages: List[EvalStage] = field(default_factory=list)

    @property
    def combined_output(self) -> str:
        return "\n".join(self.captured)


def select_eval_scripts(scripts: Iterable[str]) -> List[str]:
    """Scripts worth running: those calling eval or assigning a ``source``."""
    return [s for s in scripts if s and (EVAL_CALL_RE.search(s) or SOURCE_ASSIGN_RE.search(s))]


def build_prelude(page_url: Optional[str] = None) -> str:
    parts = urlsplit(page_url or settings.mirror_host + "/")
    location = {
        "href": parts.geturl(),
        "protocol": f"{parts.scheme}:",
        "host": parts.netloc,
        "hostname": parts.hostname or "",
        "origin": f"{parts.scheme}://{parts.netloc}",
        "pathname": parts.path or "/",
        "search": f"?{parts.query}" if parts.query else "",
        "hash": "",
    }
    return SANDBOX_PRELUDE.replace("__MF_USER_AGENT__", json.dumps(settings.user_agent)).replace(
        "__MF_LOCATION__", json.dumps(location)
    )


class EvalChainExecutor:
    """Breadth-first walk over an eval chain, one isolated V8 context per stage."""

    def __init__(
        self,
        max_depth: Optional[int] = None,
        time_budget: Optional[float] = None,
        max_stages: Optional[int] = None,
        page_url: Optional[str] = None,
        max_memory: Optional[int] = None,
    ):
        self.max_depth = settings.eval_max_depth if max_depth is None else max_depth
        self.time_budget = settings.eval_time_budget if time_budget is None else time_budget
        self.max_stages = settings.eval_max_stages if max_stages is None else max_stages
        self.max_memory = settings.eval_max_memory if max_memory is None else max_memory
        self.prelude = build_prelude(page_url)

    def run(self, scripts: Iterable[str]) -> EvalChainResult:
        result = EvalChainResult()
        queue = deque((script, 0) for script in scripts if script)
        seen = set()
        captured_seen = set()

        while queue and len(result.stages) < self.max_stages:
            body, depth = queue.popleft()
            if body in seen or depth >= self.max_depth:
                continue
            seen.add(body)

            stage, captured = self._run_stage(body, depth)
            result.stages.append(stage)

            for nested in captured:
                if nested not in captured_seen:
                    captured_seen.add(nested)
                    result.captured.append(nested)
                if nested not in seen and EVAL_CALL_RE.search(nested):
                    queue.append((nested, depth + 1))

        logger.debug(
            f"Eval chain finished: {len(result.stages)} stages, {len(result.captured)} captured strings"
        )
        return result

    def _run_stage(self, body: str, depth: int) -> tuple[EvalStage, List[str]]:
        stage = EvalStage(input_snippet=body[:140], depth=depth)
        timeout_ms = int(self.time_budget * 1000)
        ctx = MiniRacer()

        try:
            ctx.eval(self.prelude, timeout=timeout_ms, max_memory=self.max_memory)
            ctx.eval(body, timeout=timeout_ms, max_memory=self.max_memory)
        except JSTimeoutException:
            stage.error = f"timeout after {self.time_budget}s"
        except JSOOMException:
            stage.error = f"out of memory (limit {self.max_memory} bytes)"
        except Exception as e:
            stage.error = str(e).strip().splitlines()[0][:300] if str(e).strip() else type(e).__name__

        captured = []
        try:
            payload = json.loads(ctx.eval(READ_BACK, timeout=timeout_ms, max_memory=self.max_memory))
            captured = [c for c in payload.get("captured", []) if isinstance(c, str)]
            stage.logs_snippet = "\n".join(payload.get("logs", []))[:300]
        except Exception as e:
            logger.debug(f"Could not read back sandbox state: {e}")
        finally:
            ctx.close()

        stage.captured_count = len(captured)
        if stage.error:
            logger.debug(f"Eval stage at depth {depth} failed: {stage.error}")
        return stage, captured

