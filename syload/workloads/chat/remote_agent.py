#!/usr/bin/env python3
"""Chat traffic agent driven over stdin/stdout by the load test runner.

This file is streamed to the client machine and executed there, so it only
uses the standard library. Commands arrive one per line on stdin and every
command is answered with exactly one ``OK <text>`` line:

  MKUSERS <n>   register (or log in) n test users
  MKROOMS <n>   create n rooms and join every user to each of them
  RATE <r>      send r messages/sec in total (0 stops sending)
  STATS         latency percentiles since the previous STATS
  ALLSTATS      latency percentiles over the whole run

Latency is end-to-end: the time from sending a message until the observer
user sees it in its /sync stream.
"""

import argparse
import json
import random
import ssl
import sys
import threading
import time
import urllib.error
import urllib.parse
import urllib.request
from concurrent.futures import ThreadPoolExecutor

PERCENTILES = (10, 25, 50, 75, 90, 95, 99)
API_PREFIX = "/_matrix/client/r0"
PASSWORD = "syload-password"

_out_lock = threading.Lock()


def emit(verb, text=""):
    with _out_lock:
        sys.stdout.write(f"{verb} {text}".rstrip() + "\n")
        sys.stdout.flush()


def progress(text):
    emit("PROGRESS", text)


def percentile(values, pct):
    if not values:
        return float("nan")
    if pct <= 0:
        return values[0]
    if pct >= 100:
        return values[-1]
    k = (len(values) - 1) * (pct / 100.0)
    f = int(k)
    c = min(f + 1, len(values) - 1)
    if f == c:
        return values[f]
    return values[f] * (c - k) + values[c] * (k - f)


def format_stats(latencies, extra=None):
    values = sorted(latencies)
    parts = [f"count={len(values)}"]
    for pct in PERCENTILES:
        parts.append(f"p{pct}={percentile(values, pct):.3f}")
    for key, value in (extra or {}).items():
        parts.append(f"{key}={value}")
    return " ".join(parts)


class MatrixClient:
    def __init__(self, base_url, verify_tls=False):
        self.base_url = base_url.rstrip("/")
        self._ctx = None
        if base_url.startswith("https") and not verify_tls:
            self._ctx = ssl.create_default_context()
            self._ctx.check_hostname = False
            self._ctx.verify_mode = ssl.CERT_NONE

    def request(self, method, path, token=None, body=None, params=None, timeout=30.0):
        url = f"{self.base_url}{API_PREFIX}{path}"
        if params:
            url = f"{url}?{urllib.parse.urlencode(params)}"
        data = json.dumps(body).encode("utf-8") if body is not None else None
        headers = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        req = urllib.request.Request(url, data=data, headers=headers, method=method)
        with urllib.request.urlopen(req, timeout=timeout, context=self._ctx) as resp:
            return json.loads(resp.read().decode("utf-8") or "{}")


class User:
    def __init__(self, name, user_id, token):
        self.name = name
        self.user_id = user_id
        self.token = token
        self.txn = 0

    def next_txn(self):
        self.txn += 1
        return f"syload-{int(time.time() * 1000)}-{self.txn}"


class Agent:
    def __init__(self, client, prefix):
        self.client = client
        self.prefix = prefix
        self.users = []
        self.rooms = []
        self.rate = 0.0
        self.sent = 0
        self.errors = 0
        self._window = []
        self._all = []
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._pool = ThreadPoolExecutor(max_workers=16)
        self._sender = None
        self._syncer = None

    # provisioning -------------------------------------------------------

    def _register(self, name):
        body = {"username": name, "password": PASSWORD, "auth": {"type": "m.login.dummy"}}
        try:
            resp = self.client.request("POST", "/register", body=body)
        except urllib.error.HTTPError as exc:
            if exc.code != 400:
                raise
            resp = self.client.request(
                "POST", "/login", body={"type": "m.login.password", "user": name, "password": PASSWORD}
            )
        return User(name, resp["user_id"], resp["access_token"])

    def make_users(self, count):
        for idx in range(len(self.users), count):
            self.users.append(self._register(f"{self.prefix}-user-{idx}"))
            if (idx + 1) % 10 == 0:
                progress(f"registered {idx + 1}/{count} users")
        return f"{len(self.users)} users"

    def make_rooms(self, count):
        if not self.users:
            raise RuntimeError("MKUSERS must run before MKROOMS")
        for idx in range(len(self.rooms), count):
            creator = self.users[idx % len(self.users)]
            resp = self.client.request("POST", "/createRoom", token=creator.token, body={"preset": "public_chat"})
            room_id = resp["room_id"]
            for user in self.users:
                if user is creator:
                    continue
                self.client.request("POST", f"/join/{urllib.parse.quote(room_id)}", token=user.token, body={})
            self.rooms.append(room_id)
            progress(f"room {idx + 1}/{count} ready")
        self._start_sync()
        return f"{len(self.rooms)} rooms"

    # traffic ------------------------------------------------------------

    def set_rate(self, rate):
        self.rate = max(0.0, rate)
        if self._sender is None:
            self._sender = threading.Thread(target=self._send_loop, daemon=True)
            self._sender.start()
        return f"rate={self.rate:g}"

    def _send_loop(self):
        next_at = time.monotonic()
        while not self._stop.is_set():
            rate = self.rate
            if rate <= 0 or not self.rooms:
                time.sleep(0.1)
                next_at = time.monotonic()
                continue
            next_at += 1.0 / rate
            delay = next_at - time.monotonic()
            if delay > 0:
                time.sleep(delay)
            user = random.choice(self.users)
            room_id = random.choice(self.rooms)
            self._pool.submit(self._send_one, user, room_id)

    def _send_one(self, user, room_id):
        txn = user.next_txn()
        body = {"msgtype": "m.text", "body": f"load test {txn}", "syload_ts": time.time()}
        path = f"/rooms/{urllib.parse.quote(room_id)}/send/m.room.message/{txn}"
        try:
            self.client.request("PUT", path, token=user.token, body=body)
            with self._lock:
                self.sent += 1
        except Exception as exc:
            with self._lock:
                self.errors += 1
            print(f"send failed: {exc}", file=sys.stderr)

    def _start_sync(self):
        if self._syncer is None:
            self._syncer = threading.Thread(target=self._sync_loop, daemon=True)
            self._syncer.start()

    def _sync_loop(self):
        observer = self.users[0]
        since = None
        while not self._stop.is_set():
            params = {"timeout": "10000"}
            if since:
                params["since"] = since
            try:
                resp = self.client.request("GET", "/sync", token=observer.token, params=params, timeout=40.0)
            except Exception as exc:
                print(f"sync failed: {exc}", file=sys.stderr)
                time.sleep(1.0)
                continue
            initial = since is None
            since = resp.get("next_batch", since)
            if initial:
                continue
            self._record_timeline(resp, time.time())

    def _record_timeline(self, resp, now):
        joined = (resp.get("rooms") or {}).get("join") or {}
        latencies = []
        for room in joined.values():
            for event in (room.get("timeline") or {}).get("events") or []:
                content = event.get("content") or {}
                sent_at = content.get("syload_ts")
                if isinstance(sent_at, (int, float)):
                    latencies.append(max(0.0, now - sent_at))
        if latencies:
            with self._lock:
                self._window.extend(latencies)
                self._all.extend(latencies)

    # reporting ----------------------------------------------------------

    def stats(self):
        with self._lock:
            window, self._window = self._window, []
            extra = {"sent": self.sent, "errors": self.errors}
        return format_stats(window, extra)

    def all_stats(self):
        with self._lock:
            values = list(self._all)
            extra = {"sent": self.sent, "errors": self.errors}
        return format_stats(values, extra)

    def shutdown(self):
        self._stop.set()
        self._pool.shutdown(wait=False)


def handle(agent, line):
    parts = line.split()
    if not parts:
        return None
    cmd, args = parts[0].upper(), parts[1:]
    if cmd == "MKUSERS":
        return agent.make_users(int(args[0]))
    if cmd == "MKROOMS":
        return agent.make_rooms(int(args[0]))
    if cmd == "RATE":
        return agent.set_rate(float(args[0]))
    if cmd == "STATS":
        return agent.stats()
    if cmd == "ALLSTATS":
        return agent.all_stats()
    raise ValueError(f"unknown command {cmd}")


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="syload chat traffic agent")
    parser.add_argument("--server", required=True, help="host:port of the server under test")
    parser.add_argument("--no-ssl", action="store_true")
    parser.add_argument("--prefix", default="syload", help="Username prefix for test users")
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    scheme = "http" if args.no_ssl else "https"
    agent = Agent(MatrixClient(f"{scheme}://{args.server}"), args.prefix)
    emit("START")
    try:
        for line in iter(sys.stdin.readline, ""):
            line = line.strip()
            if not line:
                continue
            try:
                reply = handle(agent, line)
            except Exception as exc:
                # Still answer, or the runner would wait for this command forever.
                print(f"{line} failed: {exc}", file=sys.stderr)
                reply = f"error {type(exc).__name__}: {exc}"
            emit("OK", reply or "")
    finally:
        agent.shutdown()


if __name__ == "__main__":
    main(sys.argv[1:])
