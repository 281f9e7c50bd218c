"""Extraction of benchmark results from the relayed container output."""
import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

QPS_PATTERN = re.compile(r"QPS:\s*(\d+(?:\.\d+)?)")
HEADLINE_PATTERNS = (
    re.compile(r"ops.*fastest.*slowest"),
    re.compile(r"\b(READ|WRITE)\s+-\s+QPS:"),
    re.compile(r"^\S.*\s+time:\s+\["),
)
MAX_HEADLINES = 20


@dataclass
class BenchmarkSummary:
    records: List[Dict[str, Any]] = field(default_factory=list)
    headlines: List[str] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not self.records and not self.headlines


def parse_latest_qps(log_lines: Sequence[str]) -> Optional[float]:
    """Returns the most recent QPS figure in the given lines, if any."""
    for line in reversed(log_lines):
        match = QPS_PATTERN.search(line)
        if match:
            try:
                return float(match.group(1))
            except ValueError:
                continue
    return None


def extract_json_records(text: str) -> List[Dict[str, Any]]:
    """Finds the JSON result objects (those carrying a 'qps' key) printed by the benchmark."""
    decoder = json.JSONDecoder()
    records = []
    index = 0
    while True:
        start = text.find("{", index)
        if start == -1:
            return records
        try:
            obj, end = decoder.raw_decode(text, start)
        except ValueError:
            index = start + 1
            continue
        if isinstance(obj, dict) and "qps" in obj:
            records.append(obj)
        index = end


def summarize(output: bytes) -> BenchmarkSummary:
    text = output.decode("utf-8", errors="replace")
    lines = text.splitlines()
    headlines = []
    i = 0
    # Each matching line is kept with the two lines that follow it.
    while i < len(lines) and len(headlines) < MAX_HEADLINES:
        if any(p.search(lines[i]) for p in HEADLINE_PATTERNS):
            headlines.extend(l for l in lines[i:i + 3] if l.strip())
            i += 3
        else:
            i += 1
    return BenchmarkSummary(records=extract_json_records(text), headlines=headlines[:MAX_HEADLINES])


def format_record(record: Dict[str, Any]) -> str:
    latency = " ".join(
        f"{p}={record[f'latency_us_{p}'] / 1000:.2f}ms"
        for p in ("p50", "p95", "p99")
        if isinstance(record.get(f"latency_us_{p}"), (int, float))
    )
    return (f"{record.get('mode', '?')}: QPS={float(record.get('qps', 0)):.2f} "
            f"ok={record.get('ok_ops', '?')} err={record.get('err_ops', '?')} {latency}").rstrip()
