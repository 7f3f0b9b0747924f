import logging
from datetime import date
from typing import Annotated, Any, Iterator, Optional

from fastapi import Body, Depends, FastAPI, Path, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session, sessionmaker

from actions import Actions, Result, serialize_user
from config import get_settings
from database import build_engine, build_session_factory
from identity import ExternalPrincipal, read_principal_token, sync_user
from schemas import MAX_RECORD_ID

logger = logging.getLogger(__name__)

STATUS_BY_CODE = {
    "not_authenticated": 401,
    "unauthorized": 403,
    "not_found": 404,
    "conflict": 409,
    "already_member": 409,
    "cannot_remove_creator": 409,
    "expired": 410,
    "validation_error": 422,
    "operation_failed": 500,
}

Payload = dict[str, Any]
RecordIdPath = Annotated[int, Path(gt=0, le=MAX_RECORD_ID)]
GroupFilter = Annotated[Optional[int], Query(gt=0, le=MAX_RECORD_ID)]


def respond(result: Result) -> JSONResponse:
    if result.get("success"):
        return JSONResponse(result)
    status = STATUS_BY_CODE.get(str(result.get("code")), 400)
    if result.get("retryable"):
        status = 503
    return JSONResponse(result, status_code=status)


def get_db(request: Request) -> Iterator[Session]:
    factory: Optional[sessionmaker[Session]] = request.app.state.session_factory
    if factory is None:
        factory = build_session_factory(build_engine())
        request.app.state.session_factory = factory
    db = factory()
    try:
        yield db
    finally:
        db.close()


def get_principal(request: Request) -> Optional[ExternalPrincipal]:
    header = request.headers.get("authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer":
        return None
    return read_principal_token(token.strip())


def get_actions(
    db: Session = Depends(get_db),
    principal: Optional[ExternalPrincipal] = Depends(get_principal),
) -> Actions:
    return Actions.for_principal(db, principal)


def create_app(session_factory: Optional[sessionmaker[Session]] = None) -> FastAPI:
    logging.basicConfig(level=get_settings().log_level)

    app = FastAPI(title="Couples Finance")
    app.state.session_factory = session_factory

    @app.exception_handler(RequestValidationError)
    def invalid_request(_request: Request, exc: RequestValidationError):
        first = exc.errors()[0]
        field = str(first.get("loc", ("request",))[-1])
        message = f"{field}: {first.get('msg', 'Invalid input')}"
        return respond({"error": message, "code": "validation_error"})

    @app.get("/api/health")
    def health():
        return {"status": "ok"}

    @app.post("/api/session")
    def open_session(
        db: Session = Depends(get_db),
        principal: Optional[ExternalPrincipal] = Depends(get_principal),
    ):
        if principal is None:
            return respond({"error": "Not authenticated", "code": "not_authenticated"})
        user = sync_user(db, principal)
        logger.debug(f"session_opened: user_id={user.id}")
        return respond({"success": True, "user": serialize_user(user)})

    @app.get("/api/groups")
    def list_groups(actions: Actions = Depends(get_actions)):
        return respond(actions.list_groups())

    @app.post("/api/groups")
    def create_group(
        payload: Payload = Body(...),
        actions: Actions = Depends(get_actions),
    ):
        return respond(actions.create_group(payload))

    @app.patch("/api/groups/{group_id}")
    def rename_group(
        group_id: RecordIdPath,
        payload: Payload = Body(...),
        actions: Actions = Depends(get_actions),
    ):
        return respond(actions.rename_group(group_id, payload))

    @app.post("/api/groups/{group_id}/invites")
    def generate_invite(
        group_id: RecordIdPath, actions: Actions = Depends(get_actions)
    ):
        return respond(actions.generate_invite(group_id))

    @app.post("/api/groups/{group_id}/leave")
    def leave_group(group_id: RecordIdPath, actions: Actions = Depends(get_actions)):
        return respond(actions.leave_group(group_id))

    @app.delete("/api/groups/{group_id}/members/{user_id}")
    def remove_member(
        group_id: RecordIdPath,
        user_id: RecordIdPath,
        actions: Actions = Depends(get_actions),
    ):
        return respond(actions.remove_member(group_id, user_id))

    @app.post("/api/invites/accept")
    def accept_invite(
        payload: Payload = Body(...),
        actions: Actions = Depends(get_actions),
    ):
        return respond(actions.accept_invite(payload))

    @app.get("/api/categories")
    def list_categories(
        group_id: GroupFilter = None, actions: Actions = Depends(get_actions)
    ):
        return respond(actions.list_categories(group_id))

    @app.post("/api/categories")
    def create_category(
        payload: Payload = Body(...),
        actions: Actions = Depends(get_actions),
    ):
        return respond(actions.create_category(payload))

    @app.patch("/api/categories/{category_id}")
    def update_category(
        category_id: RecordIdPath,
        payload: Payload = Body(...),
        actions: Actions = Depends(get_actions),
    ):
        return respond(actions.update_category(category_id, payload))

    @app.delete("/api/categories/{category_id}")
    def delete_category(
        category_id: RecordIdPath, actions: Actions = Depends(get_actions)
    ):
        return respond(actions.delete_category(category_id))

    @app.get("/api/goals")
    def list_goals(
        group_id: GroupFilter = None, actions: Actions = Depends(get_actions)
    ):
        return respond(actions.list_goals(group_id))

    @app.get("/api/goals/progress")
    def goal_progress(actions: Actions = Depends(get_actions)):
        return respond(actions.goal_progress())

    @app.post("/api/goals")
    def create_goal(
        payload: Payload = Body(...),
        actions: Actions = Depends(get_actions),
    ):
        return respond(actions.create_goal(payload))

    @app.patch("/api/goals/{goal_id}")
    def update_goal(
        goal_id: RecordIdPath,
        payload: Payload = Body(...),
        actions: Actions = Depends(get_actions),
    ):
        return respond(actions.update_goal(goal_id, payload))

    @app.delete("/api/goals/{goal_id}")
    def delete_goal(goal_id: RecordIdPath, actions: Actions = Depends(get_actions)):
        return respond(actions.delete_goal(goal_id))

    @app.get("/api/expenses")
    def list_expenses(
        group_id: GroupFilter = None,
        start: Optional[date] = None,
        end: Optional[date] = None,
        actions: Actions = Depends(get_actions),
    ):
        filters = {"group_id": group_id, "start": start, "end": end}
        return respond(actions.list_expenses(filters))

    @app.post("/api/expenses")
    def create_expense(
        payload: Payload = Body(...),
        actions: Actions = Depends(get_actions),
    ):
        return respond(actions.create_expense(payload))

    @app.patch("/api/expenses/{expense_id}")
    def update_expense(
        expense_id: RecordIdPath,
        payload: Payload = Body(...),
        actions: Actions = Depends(get_actions),
    ):
        return respond(actions.update_expense(expense_id, payload))

    @app.delete("/api/expenses/{expense_id}")
    def delete_expense(
        expense_id: RecordIdPath, actions: Actions = Depends(get_actions)
    ):
        return respond(actions.delete_expense(expense_id))

    @app.get("/api/savings")
    def list_savings(
        group_id: GroupFilter = None,
        start: Optional[date] = None,
        end: Optional[date] = None,
        actions: Actions = Depends(get_actions),
    ):
        filters = {"group_id": group_id, "start": start, "end": end}
        return respond(actions.list_savings(filters))

    @app.post("/api/savings")
    def create_saving(
        payload: Payload = Body(...),
        actions: Actions = Depends(get_actions),
    ):
        return respond(actions.create_saving(payload))

    @app.patch("/api/savings/{saving_id}")
    def update_saving(
        saving_id: RecordIdPath,
        payload: Payload = Body(...),
        actions: Actions = Depends(get_actions),
    ):
        return respond(actions.update_saving(saving_id, payload))

    @app.delete("/api/savings/{saving_id}")
    def delete_saving(saving_id: RecordIdPath, actions: Actions = Depends(get_actions)):
        return respond(actions.delete_saving(saving_id))

    @app.get("/api/summary")
    def summary(
        start: Optional[date] = None,
        end: Optional[date] = None,
        actions: Actions = Depends(get_actions),
    ):
        return respond(actions.summary({"start": start, "end": end}))

    return app


app = create_app()


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)
