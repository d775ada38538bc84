from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError

from pipeline_history.schemas.legacy_history import LegacyPipelineBuild
from pipeline_history.services.error_codes import DecodeError


@dataclass
class DecodedHistory:
    skeleton: LegacyPipelineBuild
    tree: dict[str, Any]

    @property
    def has_stages_key(self) -> bool:
        return "stages" in self.tree


def _load_tree(raw: str | bytes, pipeline_build_id: int | None) -> dict[str, Any]:
    try:
        tree = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise DecodeError(f"invalid json payload: {exc}", pipeline_build_id=pipeline_build_id) from exc

    if not isinstance(tree, dict):
        raise DecodeError(
            f"payload must be a json object, got {type(tree).__name__}",
            pipeline_build_id=pipeline_build_id,
        )
    return tree


def _check_identity(tree: dict[str, Any], pipeline_build_id: int | None) -> None:
    if tree.get("id") is None:
        raise DecodeError("payload has no build id", pipeline_build_id=pipeline_build_id)

    pipeline = tree.get("pipeline")
    if not isinstance(pipeline, dict) or pipeline.get("id") is None:
        raise DecodeError("payload has no pipeline id", pipeline_build_id=pipeline_build_id)


def decode_legacy_record(raw: str | bytes, *, pipeline_build_id: int | None = None) -> DecodedHistory:
    tree = _load_tree(raw, pipeline_build_id)
    _check_identity(tree, pipeline_build_id)

    try:
        skeleton = LegacyPipelineBuild.model_validate(tree)
    except ValidationError as exc:
        first = exc.errors()[0] if exc.errors() else {}
        location = ".".join(str(part) for part in first.get("loc", ()))
        raise DecodeError(
            f"payload does not match pipeline build shape at {location or '<root>'}: {first.get('msg', exc)}",
            pipeline_build_id=pipeline_build_id,
        ) from exc

    return DecodedHistory(skeleton=skeleton, tree=tree)
