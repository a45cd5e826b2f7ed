import json
import re
import uuid
from urllib.parse import parse_qs, urlencode, urlparse

import requests


class FakeResponse:
    def __init__(self, status_code=200, json_data=None, text=None, headers=None):
        self.status_code = status_code
        self._json = json_data
        if text is None:
            text = json.dumps(json_data) if json_data is not None else ""
        self.text = text
        self.content = text.encode("utf-8")
        self.headers = headers or {}
        self.reason = "Fake"

    def json(self):
        if self._json is not None:
            return self._json
        return json.loads(self.text)


def token_response(token="tok-1", expires_in=3600):
    return FakeResponse(200, {"access_token": token, "expires_in": expires_in, "token_type": "Bearer"})


class ScriptedTokenSession:
    """Token endpoint that replays a script of responses/exceptions; the last entry repeats."""

    def __init__(self, *script):
        self.script = list(script) or [token_response()]
        self.calls = []

    def post(self, url, data=None, auth=None, headers=None, timeout=None):
        self.calls.append({"url": url, "data": data, "auth": auth})
        item = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        if isinstance(item, Exception):
            raise item
        return item


_CLAUSE = re.compile(r'([\w.]+) eq "((?:[^"\\]|\\.)*)"')


def _lookup(user, attr):
    value = user
    for part in attr.split("."):
        value = (value or {}).get(part)
    return value


class FakePingOne:
    """In-memory stand-in for the PingOne token and management endpoints."""

    def __init__(self, populations=None, page_size=None):
        self.populations = populations or [{"id": "pop-1", "name": "Default", "userCount": 0}]
        self.users = {}
        self.calls = []
        self.token_calls = 0
        self.failures = {}
        self.page_size = page_size

    def add_user(self, username, email=None, population_id="pop-1", **extra):
        user_id = extra.pop("id", None) or uuid.uuid4().hex
        self.users[user_id] = {
            "id": user_id,
            "username": username,
            "email": email or f"{username}@example.com",
            "population": {"id": population_id},
            "enabled": True,
            **extra,
        }
        return self.users[user_id]

    def fail_next(self, method, resource, *statuses):
        self.failures.setdefault((method, resource), []).extend(statuses)

    # ---------- requests.Session surface ----------
    def post(self, url, data=None, auth=None, headers=None, timeout=None):
        self.token_calls += 1
        return token_response(f"tok-{self.token_calls}")

    def request(self, method, url, params=None, json=None, headers=None, timeout=None):
        self.calls.append({"method": method, "url": url, "params": params, "json": json, "headers": headers})
        parsed = urlparse(url)
        query = {k: v[0] for k, v in parse_qs(parsed.query).items()}
        query.update(params or {})
        parts = parsed.path.split("/environments/", 1)[1].split("/")[1:]
        resource = parts[0]

        pending = self.failures.get((method, resource))
        if pending:
            status = pending.pop(0)
            if isinstance(status, Exception):
                raise status
            return FakeResponse(status, {"message": f"injected {status}"})

        if resource == "populations":
            if len(parts) == 1:
                return FakeResponse(200, {"_embedded": {"populations": self.populations}})
            for p in self.populations:
                if p["id"] == parts[1]:
                    return FakeResponse(200, p)
            return FakeResponse(404, {"message": "Population not found"})

        if resource == "users":
            if len(parts) == 1 and method == "GET":
                return self._list_users(url, query)
            if len(parts) == 1 and method == "POST":
                return self._create_user(json)
            user = self.users.get(parts[1])
            if user is None:
                return FakeResponse(404, {"code": "NOT_FOUND", "message": "User not found"})
            if method == "GET":
                return FakeResponse(200, user)
            if method == "PATCH":
                for key, value in json.items():
                    if isinstance(value, dict):
                        user.setdefault(key, {}).update(value)
                    else:
                        user[key] = value
                return FakeResponse(200, user)
            if method == "DELETE":
                del self.users[parts[1]]
                return FakeResponse(204)
        return FakeResponse(400, {"message": "unsupported"})

    def _list_users(self, url, query):
        matched = list(self.users.values())
        if query.get("filter"):
            for attr, raw in _CLAUSE.findall(query["filter"]):
                value = raw.replace('\\"', '"').replace("\\\\", "\\")
                matched = [u for u in matched if str(_lookup(u, attr)) == value]
        limit = int(query.get("limit") or 100)
        if self.page_size:
            limit = min(limit, self.page_size)
        offset = int(query.get("offset") or 0)
        page = matched[offset : offset + limit]
        body = {"_embedded": {"users": page}, "count": len(matched), "size": len(page), "_links": {}}
        if offset + limit < len(matched):
            next_query = {"limit": limit, "offset": offset + limit}
            if query.get("filter"):
                next_query["filter"] = query["filter"]
            base = url.split("?", 1)[0]
            body["_links"]["next"] = {"href": f"{base}?{urlencode(next_query)}"}
        return FakeResponse(200, body)

    def _create_user(self, payload):
        for u in self.users.values():
            if u["username"] == payload.get("username"):
                return FakeResponse(
                    400,
                    {"code": "INVALID_DATA", "message": "Invalid data", "details": [{"message": "username must be unique"}]},
                )
        user_id = uuid.uuid4().hex
        self.users[user_id] = {"id": user_id, "enabled": True, **payload}
        return FakeResponse(201, self.users[user_id])


def network_error(message="connection refused"):
    return requests.ConnectionError(message)
