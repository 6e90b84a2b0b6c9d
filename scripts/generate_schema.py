from __future__ import annotations

import json
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from opswatch.config.models import GatewayConfig


def main(out_dir: str = "schemas") -> Path:
    schema = GatewayConfig.model_json_schema()
    target = Path(out_dir)
    target.mkdir(parents=True, exist_ok=True)
    out_path = target / "opswatch_config_v1.json"
    out_path.write_text(json.dumps(schema, indent=2, sort_keys=True), encoding="utf-8")
    print(f"JSON Schema generated: {out_path}")
    return out_path


if __name__ == "__main__":
    main(*sys.argv[1:2])
    raise SystemExit(0)
