"""
Public v1 API, gated by the quota meter.

Every request must carry x-api-key. The dependency meters the call before the
handler runs; rejected calls (invalid/revoked key, quota exhausted) never
reach the handler and are not counted.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request, Response

from persona.features.content import service as content_service
from persona.features.quota.service import meter_request
from persona.features.reviews import service as reviews_service
from persona.models.api_key import QuotaStatus

router = APIRouter(prefix="/api/v1", tags=["public-api"])


def require_api_key(
    request: Request,
    response: Response,
    x_api_key: Optional[str] = Header(None),
) -> QuotaStatus:
    """Meter the request against the key's monthly quota and expose quota headers."""
    endpoint = f"{request.method} {request.url.path}"
    status = meter_request(x_api_key, endpoint)
    response.headers["X-Quota-Limit"] = str(status.total)
    response.headers["X-Quota-Remaining"] = str(status.remaining)
    response.headers["X-Quota-Reset"] = status.resets_on.isoformat()
    return status


def _quota(status: QuotaStatus) -> dict:
    return {
        "used": status.used,
        "total": status.total,
        "remaining": status.remaining,
        "resetsOn": status.resets_on.isoformat(),
    }


def _listing(entity_type: str, page: int, limit: int, status: QuotaStatus) -> dict:
    return {"success": True, **content_service.list_entities(entity_type, page, limit), "quota": _quota(status)}


def _detail(entity_type: str, slug: str, status: QuotaStatus) -> dict:
    return {"success": True, "data": content_service.get_entity(entity_type, slug), "quota": _quota(status)}


@router.get("/celebrities")
def celebrities(page: int = Query(1, ge=1), limit: int = Query(20, ge=1), status: QuotaStatus = Depends(require_api_key)):
    return _listing("celebrities", page, limit, status)


@router.get("/celebrities/{slug}")
def celebrity(slug: str, status: QuotaStatus = Depends(require_api_key)):
    return _detail("celebrities", slug, status)


@router.get("/outfits")
def outfits(page: int = Query(1, ge=1), limit: int = Query(20, ge=1), status: QuotaStatus = Depends(require_api_key)):
    return _listing("outfits", page, limit, status)


@router.get("/outfits/{slug}")
def outfit(slug: str, status: QuotaStatus = Depends(require_api_key)):
    return _detail("outfits", slug, status)


@router.get("/movies")
def movies(page: int = Query(1, ge=1), limit: int = Query(20, ge=1), status: QuotaStatus = Depends(require_api_key)):
    return _listing("movies", page, limit, status)


@router.get("/movies/{slug}")
def movie(slug: str, status: QuotaStatus = Depends(require_api_key)):
    return _detail("movies", slug, status)


@router.get("/reviews")
def reviews(page: int = Query(1, ge=1), limit: int = Query(20, ge=1), status: QuotaStatus = Depends(require_api_key)):
    return _listing("reviews", page, limit, status)


@router.get("/reviews/{slug}")
def review(slug: str, status: QuotaStatus = Depends(require_api_key)):
    return _detail("reviews", slug, status)


@router.get("/news")
def news(page: int = Query(1, ge=1), limit: int = Query(20, ge=1), status: QuotaStatus = Depends(require_api_key)):
    return _listing("news", page, limit, status)


@router.get("/news/{slug}")
def news_article(slug: str, status: QuotaStatus = Depends(require_api_key)):
    return _detail("news", slug, status)


@router.get("/reviews/{slug}/user-reviews")
def review_user_reviews(
    slug: str,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1),
    status: QuotaStatus = Depends(require_api_key),
):
    result = reviews_service.list_user_reviews(slug, page=page, limit=limit)
    return {"success": True, **result.to_wire(), "quota": _quota(status)}
