"""
Metered schema and generated-API routes.
The control plane admits and meters these calls; the work itself is done by the SchemaBackend.
"""
import uuid

from fastapi import APIRouter, Depends, Request

from backlify.auth.dependencies import get_current_context, get_services
from backlify.middleware.context import RequestContext

router = APIRouter(tags=["schema"])

GENERATED_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE"]


@router.post("/generate-schema")
async def generate_schema(
    services=Depends(get_services),
    ctx: RequestContext = Depends(get_current_context),
):
    return await services.schema_backend.generate_schema(ctx.principal, ctx.body)


@router.post("/modify-schema")
async def modify_schema(
    services=Depends(get_services),
    ctx: RequestContext = Depends(get_current_context),
):
    return await services.schema_backend.modify_schema(ctx.principal, ctx.body)


@router.post("/create-api-from-schema")
async def create_api_from_schema(
    services=Depends(get_services),
    ctx: RequestContext = Depends(get_current_context),
):
    """Counted as a project when it answers 200"""
    return await services.schema_backend.create_api(ctx.principal, ctx.body)


async def generated_api(
    request: Request,
    api_id: uuid.UUID,
    path: str = "",
    services=Depends(get_services),
    ctx: RequestContext = Depends(get_current_context),
):
    """Counted as an API request against the caller's monthly quota"""
    return await services.schema_backend.handle_api_request(
        ctx.principal,
        str(api_id),
        request.method,
        f"/{path}" if path else "/",
        ctx.body,
        query=dict(request.query_params),
    )


router.add_api_route(
    "/api/{api_id:uuid}",
    generated_api,
    methods=GENERATED_METHODS,
    include_in_schema=False,
)
router.add_api_route(
    "/api/{api_id:uuid}/{path:path}",
    generated_api,
    methods=GENERATED_METHODS,
    include_in_schema=False,
)

