from __future__ import annotations

from typing import Any, Protocol

from .params import (
    ClickParams,
    ClickReadParams,
    CountParams,
    EvalParams,
    ExtractParams,
    FillParams,
    FindParams,
    ListParams,
    OpenParams,
    ReadParams,
    ScrollPlanParams,
    SnapshotParams,
    UploadParams,
    WaitParams,
)

Report = dict[str, Any]


class PlanOps(Protocol):
    """Browser operations a plan dispatches to, one coroutine per step kind.

    Reports are JSON objects owned by the binding; the engine only reads
    `sessionId` and `targetId` from them.
    """

    async def open(self, params: OpenParams) -> Report: ...

    async def list_targets(self, params: ListParams) -> Report: ...

    async def snapshot(self, params: SnapshotParams) -> Report: ...

    async def find(self, params: FindParams) -> Report: ...

    async def count(self, params: CountParams) -> Report: ...

    async def scroll_plan(self, params: ScrollPlanParams) -> Report: ...

    async def click(self, params: ClickParams) -> Report: ...

    async def click_read(self, params: ClickReadParams) -> Report: ...

    async def fill(self, params: FillParams) -> Report: ...

    async def upload(self, params: UploadParams) -> Report: ...

    async def read(self, params: ReadParams) -> Report: ...

    async def eval_js(self, params: EvalParams) -> Report: ...

    async def wait(self, params: WaitParams) -> Report: ...

    async def extract(self, params: ExtractParams) -> Report: ...
