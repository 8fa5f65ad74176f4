from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from common.state import State, get_state
from engine.diagnostics import FEATURES, run_diagnostics

router = APIRouter()


@router.get("/diagnostics")
async def diagnostics(feature: str = Query("all"), state: State = Depends(get_state)):
    if feature != "all" and feature not in FEATURES:
        return JSONResponse(
            status_code=400,
            content={"error": f"Unknown feature '{feature}'", "features": ["all", *FEATURES]},
        )

    report = await run_diagnostics(state, feature)
    return JSONResponse(status_code=report.http_status, content=report.model_dump(mode="json"))


@router.get("/health")
async def health(state: State = Depends(get_state)):
    try:
        if not state.initialized:
            await state.init()
        await state.store.ping()
    except Exception as e:
        return JSONResponse(status_code=503, content={"status": "unavailable", "error": str(e)})
    return {"status": "ok", "node_id": state.config.node_id, "store": type(state.store).__name__}
