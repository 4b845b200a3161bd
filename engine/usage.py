import threading
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from engine.models import UsageTotals


class UsageTracker:
    def __init__(
        self,
        input_cost_per_million: float = 0.0,
        output_cost_per_million: float = 0.0,
        listener: Optional[Callable[[UsageTotals], None]] = None,
        enabled: bool = True,
    ) -> None:
        self.input_cost_per_million = max(0.0, float(input_cost_per_million))
        self.output_cost_per_million = max(0.0, float(output_cost_per_million))
        self.listener = listener
        self.enabled = enabled
        self.events: List[Dict[str, Any]] = []
        self._totals = UsageTotals()
        self._lock = threading.Lock()

    def record(
        self,
        stage: str,
        model: str,
        usage: Any,
        attempt: int = 1,
        metadata: Dict[str, Any] | None = None,
    ) -> None:
        input_tokens, output_tokens, total_tokens, usage_missing = self._extract_usage(
            usage
        )
        meta = dict(metadata or {})
        meta["attempt"] = attempt
        if usage_missing:
            meta["usage_missing"] = True
        self.record_tokens(
            input_tokens,
            output_tokens,
            total_tokens,
            stage=stage,
            model=model,
            metadata=meta,
        )

    def record_tokens(
        self,
        prompt_tokens: int,
        completion_tokens: int,
        total_tokens: int = 0,
        stage: str = "unknown",
        model: str = "",
        metadata: Dict[str, Any] | None = None,
    ) -> None:
        if not self.enabled:
            return
        try:
            prompt_tokens = max(0, int(prompt_tokens or 0))
            completion_tokens = max(0, int(completion_tokens or 0))
            total_tokens = max(0, int(total_tokens or 0))
        except (TypeError, ValueError):
            return
        if total_tokens == 0:
            total_tokens = prompt_tokens + completion_tokens
        cost = self._estimate_cost(prompt_tokens, completion_tokens)
        event = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "stage": stage,
            "model": model,
            "input_tokens": prompt_tokens,
            "output_tokens": completion_tokens,
            "total_tokens": total_tokens,
            "estimated_cost_usd": round(cost, 8),
            "metadata": metadata or {},
        }
        with self._lock:
            self.events.append(event)
            t = self._totals
            self._totals = UsageTotals(
                prompt_tokens=t.prompt_tokens + prompt_tokens,
                completion_tokens=t.completion_tokens + completion_tokens,
                total_tokens=t.total_tokens + total_tokens,
                estimated_cost_usd=t.estimated_cost_usd + cost,
                calls=t.calls + 1,
            )
            snapshot = self._totals
        self._notify(snapshot)

    def snapshot(self) -> UsageTotals:
        with self._lock:
            return self._totals

    def reset(self) -> None:
        with self._lock:
            self.events = []
            self._totals = UsageTotals()

    def _notify(self, totals: UsageTotals) -> None:
        if not self.listener:
            return
        try:
            self.listener(totals)
        except Exception:
            # Usage observers must not affect research control flow.
            pass

    def _extract_usage(self, usage: Any) -> tuple[int, int, int, bool]:
        if usage is None:
            return 0, 0, 0, True

        def pick_int(obj: Any, keys: List[str]) -> int:
            for key in keys:
                val = None
                if isinstance(obj, dict):
                    val = obj.get(key)
                else:
                    val = getattr(obj, key, None)
                if isinstance(val, int):
                    return val
            return 0

        input_tokens = pick_int(
            usage, ["prompt_tokens", "input_tokens", "promptTokenCount"]
        )
        output_tokens = pick_int(
            usage, ["completion_tokens", "output_tokens", "candidatesTokenCount"]
        )
        total_tokens = pick_int(usage, ["total_tokens", "totalTokenCount"])
        if total_tokens == 0:
            total_tokens = input_tokens + output_tokens
        return input_tokens, output_tokens, total_tokens, False

    def _estimate_cost(self, input_tokens: int, output_tokens: int) -> float:
        return (input_tokens / 1_000_000.0) * self.input_cost_per_million + (
            output_tokens / 1_000_000.0
        ) * self.output_cost_per_million

    def to_dict(self) -> Dict[str, Any]:
        with self._lock:
            events = list(self.events)
            totals = self._totals
        by_stage: Dict[str, Dict[str, float]] = {}
        by_model: Dict[str, Dict[str, float]] = {}
        for e in events:
            for bucket, key in ((by_stage, e["stage"]), (by_model, e["model"] or "unknown")):
                if key not in bucket:
                    bucket[key] = {
                        "input_tokens": 0,
                        "output_tokens": 0,
                        "total_tokens": 0,
                        "estimated_cost_usd": 0.0,
                        "calls": 0,
                    }
                bucket[key]["input_tokens"] += e["input_tokens"]
                bucket[key]["output_tokens"] += e["output_tokens"]
                bucket[key]["total_tokens"] += e["total_tokens"]
                bucket[key]["estimated_cost_usd"] += e["estimated_cost_usd"]
                bucket[key]["calls"] += 1
        for bucket in (by_stage, by_model):
            for key in bucket:
                bucket[key]["estimated_cost_usd"] = round(
                    bucket[key]["estimated_cost_usd"], 8
                )
        return {
            "enabled": self.enabled,
            "rates_per_1m": {
                "input": self.input_cost_per_million,
                "output": self.output_cost_per_million,
            },
            "events": events,
            "by_stage": by_stage,
            "by_model": by_model,
            "total": totals.to_dict(),
        }

    def log_total(self) -> None:
        usage = self.to_dict()
        total = usage["total"]
        print("[usage] token breakdown")
        print(
            "[usage] total "
            f"in={total['prompt_tokens']} "
            f"out={total['completion_tokens']} "
            f"all={total['total_tokens']} "
            f"calls={total['calls']} "
            f"cost_usd={total['estimated_cost_usd']}"
        )
        top = sorted(
            [
                (stage, stats.get("total_tokens", 0), stats.get("estimated_cost_usd", 0.0))
                for stage, stats in usage["by_stage"].items()
            ],
            key=lambda x: x[1],
            reverse=True,
        )[:6]
        for stage, tok, cost in top:
            print(f"[usage] stage={stage} tokens={tok} cost_usd={cost}")
