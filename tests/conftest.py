# SPDX-License-Identifier: Apache-2.0
# Copyright (c) 2025 Eul Bite

"""
Shared fixtures: an in-process fake of the LimaCharlie endpoints.

FakeLimaCharlie keeps its state in plain dicts so tests can seed and
inspect it directly. `calls` counts requests per route name and
`scripted` queues canned (status, body, headers) answers per route,
served before any handler logic runs.
"""

import asyncio
import base64
import gzip
import json
from collections import Counter, defaultdict

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from limacharlie.client import Client, ClientConfig
from limacharlie.options import ClientOptions

OID = "11111111-1111-4111-8111-111111111111"
UID = "33333333-3333-4333-8333-333333333333"
API_KEY = "22222222-2222-4222-8222-222222222222"

ALL_PERMS = ["dr.list", "dr.list.managed", "dr.list.replicant", "output.list", "org.get"]


def _form_bool(value: str | None) -> bool:
    return (value or "").lower() == "true"


class FakeLimaCharlie:
    def __init__(self):
        self.calls: Counter = Counter()
        self.scripted: dict[str, list[tuple[int, object, dict]]] = defaultdict(list)
        self.token: str | None = None
        self.jwt_forms: list[dict] = []
        self.request_headers: list[dict] = []

        self.who = {"ident": "tests@example.com", "orgs": [OID], "perms": list(ALL_PERMS)}
        self.who_delay = 0.0

        # namespace -> name -> rule
        self.dr_rules: dict[str, dict[str, dict]] = {"general": {}, "managed": {}, "replicant": {}}
        self.fp_rules: dict[str, dict] = {}
        self.outputs: dict[str, dict] = {}
        self.resources: dict[str, list[str]] = {}
        self.integrity: dict[str, dict] = {}
        self.exfil: dict = {"perf": {}, "list": {}, "watch": {}}
        self.artifacts: dict[str, dict] = {}
        self.net_policies: dict[str, dict] = {}
        # hive -> partition -> key -> record
        self.hives: dict[str, dict[str, dict[str, dict]]] = defaultdict(dict)

        # Live stream
        self.ws_headers: list[dict] = []
        self.ws_frames: list[str] = []
        self.ws_send_connected = True

        self.server: TestServer | None = None

    # -------------------------------------------------------------------------
    # Wiring
    # -------------------------------------------------------------------------

    def make_app(self) -> web.Application:
        app = web.Application(middlewares=[self._middleware])
        app.router.add_post("/jwt", self.handle_jwt, name="jwt")
        app.router.add_get("/ws", self.handle_ws, name="ws")
        app.router.add_get("/v1/who", self.handle_who, name="who")
        app.router.add_route("*", "/v1/rules/{oid}", self.handle_rules, name="rules")
        app.router.add_route("*", "/v1/fp/{oid}", self.handle_fp, name="fp")
        app.router.add_route("*", "/v1/outputs/{oid}", self.handle_outputs, name="outputs")
        app.router.add_route("*", "/v1/orgs/{oid}/resources", self.handle_resources, name="resources")
        app.router.add_post("/v1/service/{oid}/{service}", self.handle_service, name="service")
        app.router.add_route("*", "/net/policy", self.handle_net_policy, name="net_policy")
        app.router.add_get("/v1/hive/{hive}/{partition}", self.handle_hive_list, name="hive_list")
        app.router.add_route("*", "/v1/hive/{hive}/{partition}/{key}", self.handle_hive_record, name="hive")
        app.router.add_route(
            "*", "/v1/hive/{hive}/{partition}/{key}/{target}", self.handle_hive_record, name="hive_target"
        )
        return app

    def client_config(self, **overrides) -> ClientConfig:
        root = str(self.server.make_url("/")).rstrip("/")
        settings = dict(
            api_root=root,
            jwt_url=f"{root}/jwt",
            stream_url=str(self.server.make_url("/ws")).replace("http://", "ws://"),
            timeout=5.0,
            token_timeout=5.0,
            backoff_base=0.0,
            backoff_max=0.0,
        )
        settings.update(overrides)
        return ClientConfig(**settings)

    @web.middleware
    async def _middleware(self, request: web.Request, handler):
        name = request.match_info.route.name
        self.calls[name] += 1
        self.request_headers.append(dict(request.headers))
        if self.scripted.get(name):
            status, body, headers = self.scripted[name].pop(0)
            if isinstance(body, (dict, list)):
                return web.json_response(body, status=status, headers=headers)
            return web.Response(text=body or "", status=status, headers=headers)
        if name not in ("jwt", "ws") and request.headers.get("Authorization") != f"bearer {self.token}":
            return web.json_response({"error": "unauthorized"}, status=401)
        return await handler(request)

    def all_state(self) -> str:
        """Snapshot used to assert that nothing was written."""
        return json.dumps(
            [self.dr_rules, self.fp_rules, self.outputs, self.resources, self.integrity,
             self.exfil, self.artifacts, self.net_policies, self.hives],
            sort_keys=True,
        )

    # -------------------------------------------------------------------------
    # Auth
    # -------------------------------------------------------------------------

    async def handle_jwt(self, request: web.Request) -> web.Response:
        form = dict(await request.post())
        self.jwt_forms.append(form)
        if form.get("secret") != API_KEY:
            return web.json_response({"error": "invalid secret"}, status=401)
        self.token = f"tok{self.calls['jwt']}"
        return web.json_response({"jwt": self.token})

    async def handle_who(self, request: web.Request) -> web.Response:
        if self.who_delay:
            await asyncio.sleep(self.who_delay)
        return web.json_response(self.who)

    # -------------------------------------------------------------------------
    # Rules
    # -------------------------------------------------------------------------

    async def handle_rules(self, request: web.Request) -> web.Response:
        if request.method == "GET":
            namespace = request.query.get("namespace") or "general"
            rules = {
                name: {"name": name, "namespace": namespace, **rule}
                for name, rule in self.dr_rules[namespace].items()
            }
            return web.json_response(rules)

        form = await request.post()
        namespace = form.get("namespace") or "general"
        name = form["name"]
        if request.method == "DELETE":
            self.dr_rules[namespace].pop(name, None)
            return web.json_response({})

        if name in self.dr_rules[namespace] and not _form_bool(form.get("is_replace")):
            return web.json_response({"error": "rule already exists"}, status=409)
        rule = {
            "detect": json.loads(form["detection"]),
            "respond": json.loads(form["response"]),
            "is_enabled": _form_bool(form.get("is_enabled")),
        }
        if form.get("expire_on"):
            rule["expire_on"] = int(form["expire_on"])
        self.dr_rules[namespace][name] = rule
        return web.json_response({"guid": f"{namespace}/{name}"})

    async def handle_fp(self, request: web.Request) -> web.Response:
        if request.method == "GET":
            return web.json_response(
                {name: {"name": name, "data": data, "oid": OID} for name, data in self.fp_rules.items()}
            )
        form = await request.post()
        if request.method == "DELETE":
            self.fp_rules.pop(form["name"], None)
        else:
            self.fp_rules[form["name"]] = json.loads(form["rule"])
        return web.json_response({})

    # -------------------------------------------------------------------------
    # Outputs & resources
    # -------------------------------------------------------------------------

    async def handle_outputs(self, request: web.Request) -> web.Response:
        if request.method == "GET":
            return web.json_response({OID: self.outputs})
        form = await request.post()
        if request.method == "DELETE":
            self.outputs.pop(form["name"], None)
        else:
            self.outputs[form["name"]] = dict(form)
        return web.json_response({})

    async def handle_resources(self, request: web.Request) -> web.Response:
        if request.method == "GET":
            return web.json_response({"resources": self.resources})
        form = await request.post()
        names = self.resources.setdefault(form["res_cat"], [])
        if request.method == "DELETE":
            if form["res_name"] in names:
                names.remove(form["res_name"])
        elif form["res_name"] not in names:
            names.append(form["res_name"])
        return web.json_response({})

    # -------------------------------------------------------------------------
    # Services
    # -------------------------------------------------------------------------

    async def handle_service(self, request: web.Request) -> web.Response:
        form = await request.post()
        data = json.loads(base64.b64decode(form["request_data"]))
        service = request.match_info["service"]
        action = data.pop("action")
        name = data.pop("name", None)

        if service == "integrity":
            store = self.integrity
            if action == "add_rule":
                store[name] = {
                    "patterns": data["patterns"],
                    "filters": {"tags": data["tags"], "platforms": data["platforms"]},
                }
        elif service == "logging":
            store = self.artifacts
            if action == "add_rule":
                store[name] = {
                    "patterns": data["patterns"],
                    "is_delete_after": data["is_delete_after"],
                    "is_ignore_cert": data["is_ignore_cert"],
                    "days_retention": data["days_retention"],
                    "filters": {"tags": data["tags"], "platforms": data["platforms"]},
                    "by": "tests@example.com",
                }
        elif service == "exfil":
            if action == "list_rules":
                return web.json_response(self.exfil)
            if action == "add_event_rule":
                self.exfil["list"][name] = {
                    "events": data["events"],
                    "filters": {"tags": data["tags"], "platforms": data["platforms"]},
                }
            elif action == "add_watch":
                self.exfil["watch"][name] = {
                    "event": data["event"],
                    "value": data["value"],
                    "path": data["path"],
                    "operator": data["operator"],
                    "filters": {"tags": data["tags"], "platforms": data["platforms"]},
                }
            elif action == "remove_event_rule":
                self.exfil["list"].pop(name, None)
            elif action == "remove_watch":
                self.exfil["watch"].pop(name, None)
            return web.json_response({})
        else:
            return web.json_response({"error": f"unknown service {service}"}, status=404)

        if action == "list_rules":
            return web.json_response(store)
        if action == "remove_rule":
            store.pop(name, None)
        return web.json_response({})

    # -------------------------------------------------------------------------
    # Net policies
    # -------------------------------------------------------------------------

    async def handle_net_policy(self, request: web.Request) -> web.Response:
        if request.method == "GET":
            return web.json_response({"policies": self.net_policies})
        if request.method == "DELETE":
            self.net_policies.pop(request.query["name"], None)
            return web.json_response({})
        form = await request.post()
        self.net_policies[form["name"]] = {
            "name": form["name"],
            "type": form["type"],
            "policy": json.loads(form["policy"]),
            "expires_on": int(form.get("expires_on") or 0),
            "oid": request.query["oid"],
            "created_by": "tests@example.com",
        }
        return web.json_response({})

    # -------------------------------------------------------------------------
    # Hive
    # -------------------------------------------------------------------------

    async def handle_hive_list(self, request: web.Request) -> web.Response:
        records = self.hives.get(request.match_info["hive"], {}).get(request.match_info["partition"], {})
        return web.json_response(records)

    async def handle_hive_record(self, request: web.Request) -> web.Response:
        key = request.match_info["key"]
        if request.method == "GET":
            partition = self.hives.get(request.match_info["hive"], {}).get(request.match_info["partition"], {})
            if key not in partition:
                return web.json_response({"error": "record not found"}, status=404)
            return web.json_response(partition[key])
        partition = self.hives[request.match_info["hive"]].setdefault(request.match_info["partition"], {})
        if request.method == "DELETE":
            partition.pop(key, None)
            return web.json_response({})

        form = await request.post()
        record = partition.setdefault(key, {"data": None, "sys_mtd": {"etag": ""}, "usr_mtd": {}})
        if "gzdata" in form:
            record["data"] = json.loads(gzip.decompress(base64.b64decode(form["gzdata"])))
        record["usr_mtd"] = json.loads(form["usr_mtd"])
        record["sys_mtd"]["etag"] = f"etag-{self.calls[request.match_info.route.name]}"
        return web.json_response({"guid": key})

    # -------------------------------------------------------------------------
    # Live stream
    # -------------------------------------------------------------------------

    async def handle_ws(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        self.ws_headers.append(await ws.receive_json())
        if self.ws_send_connected:
            await ws.send_str(json.dumps({"__trace": "connected"}))
        for frame in self.ws_frames:
            await ws.send_str(frame)
        # Hold the stream open until the client leaves.
        async for _ in ws:
            pass
        return ws


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path):
    """Keep the developer's LC_* variables and ~/.limacharlie out of tests."""
    for name in ("LC_OID", "LC_UID", "LC_API_KEY", "LC_CURRENT_ENV"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("LC_CREDS_FILE", str(tmp_path / "no-such-creds"))


@pytest_asyncio.fixture
async def fake():
    """Running FakeLimaCharlie server."""
    fake = FakeLimaCharlie()
    server = TestServer(fake.make_app())
    await server.start_server()
    fake.server = server
    yield fake
    await server.close()


@pytest_asyncio.fixture
async def client(fake):
    """Client authenticated against the fake with OID and API key."""
    async with Client(ClientOptions(oid=OID, api_key=API_KEY), config=fake.client_config()) as c:
        yield c
