import itertools
import json
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import parse_qsl

import httpx
import pytest
import pytest_asyncio

from app.lms.bulk import BulkOrchestrator
from app.lms.credentials import Credential, CredentialCache
from app.lms.enrollment import ENROLLMENT_LIST_FILTERS, ENROLLMENT_LIST_PATHS, ENROLLMENT_PATHS, EnrollmentService
from app.lms.gateway import RemoteGateway
from app.lms.records import KIND_SCHEMAS, ResourceKind, record_id
from app.lms.resolver import ResourceResolver
from app.lms.status import EnrollmentInspector
from app.services.lms import LMSService

BASE_URL = "https://lms.test"


class FakeLMS:
    """
    In-memory stand-in for the LMS REST API, served through httpx.MockTransport.

    - `users`, `courses`, `learning_plans` hold raw records
    - `scripted[(METHOD, path)]` is a queue of responses/exceptions served
      before normal routing
    - `failing_users[user_id]` makes enroll/unenroll for that user return
      the given status
    - `reject_search` lists kinds whose free-text search answers 400
    - `enrollments` holds (kind, user_id, resource_id) and `enrollment_details`
      extra listing fields per enrollment
    """

    def __init__(self):
        self.users: List[Dict[str, Any]] = []
        self.courses: List[Dict[str, Any]] = []
        self.learning_plans: List[Dict[str, Any]] = []
        self.calls: List[Tuple[str, str, Dict[str, str], Any]] = []
        self.scripted: Dict[Tuple[str, str], List[Any]] = {}
        self.failing_users: Dict[str, int] = {}
        self.reject_search = set()
        self.token_status = 200
        self.expires_in: Optional[int] = 3600
        self.token_requests = 0
        self.token_forms: List[Dict[str, str]] = []
        self.revoked = set()
        self.enrollments: List[Tuple[str, str, str]] = []
        self.enrollment_details: Dict[Tuple[str, str, str], Dict[str, Any]] = {}
        self._token_counter = itertools.count(1)

    # helpers for tests
    def collection(self, kind: ResourceKind) -> List[Dict[str, Any]]:
        return {
            ResourceKind.USER: self.users,
            ResourceKind.COURSE: self.courses,
            ResourceKind.LEARNING_PLAN: self.learning_plans,
        }[kind]

    def script(self, method: str, path: str, *responses):
        self.scripted.setdefault((method, path), []).extend(responses)

    def calls_to(self, method: str, path: str):
        return [c for c in self.calls if c[0] == method and c[1] == path]

    def searches(self, kind: ResourceKind):
        return [c for c in self.calls_to("GET", kind.schema.list_path) if "search_text" in c[2]]

    # transport
    def handler(self, request: httpx.Request) -> httpx.Response:
        method, path = request.method, request.url.path
        params = dict(request.url.params)
        body = json.loads(request.content) if request.content and _is_json(request) else None

        if path == "/oauth2/token":
            return self._token(request)

        self.calls.append((method, path, params, body))

        queue = self.scripted.get((method, path))
        if queue:
            item = queue.pop(0)
            if isinstance(item, Exception):
                raise item
            return item

        token = request.headers.get("Authorization", "").removeprefix("Bearer ")
        if not token or token in self.revoked:
            return httpx.Response(401, json={"message": "invalid token"})

        for kind, list_path in ENROLLMENT_LIST_PATHS.items():
            if path == list_path and method == "GET":
                return self._enrollment_listing(kind, params)

        for kind, schema in KIND_SCHEMAS.items():
            if path == schema.list_path and method == "GET":
                return self._list(kind, params)
            if path.startswith(schema.list_path + "/") and method == "GET":
                return self._get(kind, path.rsplit("/", 1)[-1])

        for kind, enroll_path in ENROLLMENT_PATHS.items():
            if path == enroll_path and method in ("POST", "DELETE"):
                return self._enrollment(kind, method, body or {})

        return httpx.Response(404, json={"message": "no route"})

    def _token(self, request: httpx.Request) -> httpx.Response:
        self.token_requests += 1
        self.token_forms.append(dict(parse_qsl(request.content.decode())))
        if self.token_status != 200:
            return httpx.Response(self.token_status, json={"error": "invalid_grant"})
        payload = {"access_token": f"token-{next(self._token_counter)}", "token_type": "bearer"}
        if self.expires_in is not None:
            payload["expires_in"] = self.expires_in
        return httpx.Response(200, json=payload)

    def _list(self, kind: ResourceKind, params: Dict[str, str]) -> httpx.Response:
        items = list(self.collection(kind))
        search = params.get("search_text")
        if search is not None:
            if kind in self.reject_search:
                return httpx.Response(400, json={"message": "search_text not supported"})
            needle = search.casefold()
            items = [r for r in items if any(needle in str(v).casefold() for v in r.values())]
        page_size = int(params.get("page_size", 20))
        return httpx.Response(
            200,
            json={"data": {"items": items[:page_size], "has_more_data": len(items) > page_size, "total_count": len(items)}},
        )

    def _get(self, kind: ResourceKind, resource_id: str) -> httpx.Response:
        for record in self.collection(kind):
            if record_id(kind, record) == resource_id:
                return httpx.Response(200, json={"data": record})
        return httpx.Response(404, json={"message": "not found"})

    def _enrollment(self, kind: ResourceKind, method: str, body: Dict[str, Any]) -> httpx.Response:
        user_id = str(body["user_ids"][0])
        if user_id in self.failing_users:
            return httpx.Response(self.failing_users[user_id], json={"message": "rejected"})
        resource_field = "course_ids" if kind is ResourceKind.COURSE else "learningplan_ids"
        resource_id = str(body[resource_field][0])
        if method == "POST":
            self.enrollments.append((kind.value, user_id, resource_id))
            return httpx.Response(200, json={"data": {"enrolled": [{"user_id": user_id}], "errors": {}}})
        if (kind.value, user_id, resource_id) in self.enrollments:
            self.enrollments.remove((kind.value, user_id, resource_id))
        return httpx.Response(200, json={"data": {}})

    def _enrollment_listing(self, kind: ResourceKind, params: Dict[str, str]) -> httpx.Response:
        user = params.get("user_id[]")
        resource = params.get(ENROLLMENT_LIST_FILTERS[kind])
        id_field = "course_id" if kind is ResourceKind.COURSE else "learning_plan_id"
        items = [
            {"user_id": u, id_field: r, **self.enrollment_details.get((k, u, r), {})}
            for k, u, r in self.enrollments
            if k == kind.value and user in (None, u) and resource in (None, r)
        ]
        page, page_size = int(params.get("page", 1)), int(params.get("page_size", 20))
        chunk = items[(page - 1) * page_size:page * page_size]
        return httpx.Response(200, json={"data": {"items": chunk, "has_more_data": page * page_size < len(items)}})


def _is_json(request: httpx.Request) -> bool:
    return request.headers.get("content-type", "").startswith("application/json")


@pytest.fixture
def fake_lms():
    lms = FakeLMS()
    lms.users.extend([
        {"user_id": "101", "email": "a@x.com", "fullname": "Alice Adams", "username": "alice"},
        {"user_id": "102", "email": "b@x.com", "fullname": "Bob Brown", "username": "bob"},
        {"user_id": "103", "email": "c@x.com", "fullname": "Carol Clark", "username": "carol"},
        {"user_id": "104", "email": "d@x.com", "first_name": "Dan", "last_name": "Diaz", "username": "dan"},
    ])
    lms.courses.extend([
        {"id": 2420, "name": "Excel", "code": "XL-100", "description": "Spreadsheet basics"},
        {"id": 2421, "name": "Excel Advanced", "code": "XL-200", "description": "Pivot tables"},
        {"course_id": 2500, "title": "Python Programming", "code": "PY-1", "description": "Intro course"},
    ])
    lms.learning_plans.extend([
        {"learning_plan_id": 277, "title": "Associate Memory Network", "code": "LP-005"},
        {"learning_plan_id": 274, "title": "Leadership Development", "code": "LP-002"},
    ])
    return lms


@pytest_asyncio.fixture
async def http_client(fake_lms):
    transport = httpx.MockTransport(fake_lms.handler)
    async with httpx.AsyncClient(base_url=BASE_URL, transport=transport) as client:
        yield client


@pytest.fixture
def credential():
    return Credential(client_id="client", client_secret="secret", username="admin", password="pw")


@pytest.fixture
def credential_cache(http_client, credential):
    return CredentialCache(credential, http_client)


@pytest.fixture
def gateway(http_client, credential_cache):
    return RemoteGateway(http_client, credential_cache, max_retries=2, retry_backoff=0)


@pytest.fixture
def resolver(gateway):
    return ResourceResolver(gateway)


@pytest.fixture
def enrollments(gateway):
    return EnrollmentService(gateway)


@pytest.fixture
def orchestrator(resolver, enrollments):
    return BulkOrchestrator(resolver, enrollments, batch_size=3, batch_pause=0)


@pytest.fixture
def inspector(resolver, enrollments):
    return EnrollmentInspector(resolver, enrollments)


@pytest.fixture
def lms_service(resolver, orchestrator):
    return LMSService(resolver, orchestrator)


@pytest_asyncio.fixture(scope="function")
async def async_client():
    # ASGITransport does not run the lifespan, so app.state.lms stays unset
    # unless a test overrides get_lms_service
    from httpx import ASGITransport, AsyncClient

    from app.api.main import app

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.dependency_overrides = {}
