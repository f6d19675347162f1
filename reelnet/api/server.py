"""
ReelNet Peer HTTP Surface

aiohttp server consumed by other nodes, trackers and players.

Peer endpoints:
- GET  /catalog                      - Public summaries of hosted content
- GET  /catalog/resolved             - Hosted + remote catalog with resolved URLs
- GET  /peers                        - Signed peer list (includes self)
- POST /gossip                       - Ingest a gossip payload
- POST /announce                     - Tracker role: accept a node announcement
- GET  /media/{media_id}/manifest    - Sovereign media manifest
- GET  /catalog/poster/{source_id}   - Cached poster image
- GET  /catalog/backdrop/{source_id} - Cached backdrop image
- POST /catalog/{entry_id}/vote      - Signed up/down vote on a catalog entry

Playback endpoints:
- GET    /stream/auth                - Admission decision for (client, link)
- GET    /stream/{link_id}/map       - Live manifest (status, adRequired, stats)
- GET    /stream/{link_id}/stream    - Encrypted (or decrypted) bytes, Range aware
- POST   /stream/proof/ad            - Submit a signed ad view
- POST   /stream/proof/premium       - Submit a signed premium view
- DELETE /stream/session/{token}     - End a session

Author: ReelNet Team
License: MIT
"""

import re
import time
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from aiohttp import web
from loguru import logger

from reelnet.identity import addresses_equal, recover_signer
from reelnet.streaming import AdViewProof, PremiumViewProof, is_loopback


CHUNK_SIZE = 64 * 1024
MAX_ANNOUNCEMENTS = 1000

_SOURCE_ID_RE = re.compile(r"^[A-Za-z0-9_.-]+$")
_RANGE_RE = re.compile(r"^bytes=(\d*)-(\d*)$")


def vote_message(entry_id: str, value: int) -> str:
    """Message a voter personal-signs."""
    return f"VOTE:{entry_id}:{value}"


def parse_range(header: Optional[str], size: int) -> Optional[Tuple[int, int]]:
    """
    Parse a single ``bytes=start-end`` range into inclusive offsets.

    Returns None when no range was requested.

    Raises:
        ValueError: If the range is malformed or unsatisfiable
    """
    if not header:
        return None
    match = _RANGE_RE.match(header.strip())
    if not match or match.group(1) == match.group(2) == "":
        raise ValueError(f"Malformed range: {header}")

    first, last = match.groups()
    if first == "":
        length = int(last)
        if length == 0:
            raise ValueError("Empty suffix range")
        start, end = max(0, size - length), size - 1
    else:
        start = int(first)
        end = int(last) if last else size - 1
        end = min(end, size - 1)

    if start >= size or end < start:
        raise ValueError(f"Unsatisfiable range {header} for {size} bytes")
    return start, end


def _json_error(message: str, status: int) -> web.Response:
    return web.json_response({"error": message}, status=status)


class PeerServer:
    """
    HTTP surface of a node.

    Holds references to the node's components; all state lives in them.
    """

    def __init__(
        self,
        directory,
        gossip,
        store,
        database,
        admission,
        load_monitor=None,
        posters_dir: Optional[Path] = None,
        backdrops_dir: Optional[Path] = None,
        host: str = "0.0.0.0",
        port: int = 21746
    ):
        """
        Initialize peer server.

        Args:
            directory: PeerDirectory
            gossip: GossipProtocol
            store: CatalogStore
            database: CatalogDatabase (media manifests)
            admission: StreamAdmission
            load_monitor: SystemLoadMonitor for the live map
            posters_dir: Cached poster images
            backdrops_dir: Cached backdrop images
            host: Listen address
            port: Listen port
        """
        self.directory = directory
        self.gossip = gossip
        self.store = store
        self.database = database
        self.admission = admission
        self.load_monitor = load_monitor
        self.posters_dir = Path(posters_dir) if posters_dir else None
        self.backdrops_dir = Path(backdrops_dir) if backdrops_dir else None
        self.host = host
        self.port = port

        # Tracker role: nodeId -> last announcement
        self.announcements: Dict[str, Dict[str, Any]] = {}

        self.app: Optional[web.Application] = None
        self.runner: Optional[web.AppRunner] = None

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/health", self.handle_health)
        app.router.add_get("/catalog", self.handle_catalog)
        app.router.add_get("/catalog/resolved", self.handle_resolved_catalog)
        app.router.add_get("/catalog/poster/{source_id}", self.handle_poster)
        app.router.add_get("/catalog/backdrop/{source_id}", self.handle_backdrop)
        app.router.add_post("/catalog/{entry_id}/vote", self.handle_vote)
        app.router.add_get("/peers", self.handle_peers)
        app.router.add_post("/gossip", self.handle_gossip)
        app.router.add_post("/announce", self.handle_announce)
        app.router.add_get("/media/{media_id}/manifest", self.handle_manifest)
        app.router.add_get("/stream/auth", self.handle_auth)
        app.router.add_post("/stream/proof/ad", self.handle_ad_proof)
        app.router.add_post("/stream/proof/premium", self.handle_premium_proof)
        app.router.add_delete("/stream/session/{token}", self.handle_end_session)
        app.router.add_get("/stream/{link_id}/map", self.handle_map)
        app.router.add_get("/stream/{link_id}/stream", self.handle_stream)
        return app

    async def start(self):
        """Start HTTP server."""
        self.app = self.build_app()
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()

        site = web.TCPSite(self.runner, self.host, self.port)
        await site.start()
        logger.info("Peer server running at http://{}:{}", self.host, self.port)

    async def stop(self):
        """Stop HTTP server."""
        if self.runner:
            await self.runner.cleanup()
            self.runner = None
        logger.info("Peer server stopped")

    @staticmethod
    async def _read_json(request: web.Request) -> Any:
        try:
            return await request.json()
        except ValueError:
            return None

    # Peer endpoints

    async def handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "ok",
            "node": self.directory.identity.identifier,
            "peers": len(self.directory),
            "links": len(self.store.links),
            "timestamp": time.time()
        })

    async def handle_catalog(self, request: web.Request) -> web.Response:
        return web.json_response(self.store.public_catalog())

    async def handle_resolved_catalog(self, request: web.Request) -> web.Response:
        return web.json_response(await self.store.resolved_catalog())

    async def handle_peers(self, request: web.Request) -> web.Response:
        return web.json_response(self.directory.export_peers())

    async def handle_gossip(self, request: web.Request) -> web.Response:
        payload = await self._read_json(request)
        if not isinstance(payload, dict):
            return _json_error("Invalid gossip payload", 400)
        accepted = await self.gossip.handle_gossip(payload)
        return web.json_response({"accepted": accepted})

    async def handle_announce(self, request: web.Request) -> web.Response:
        payload = await self._read_json(request)
        if not isinstance(payload, dict) or not payload.get("nodeId") or not payload.get("endpoint"):
            return _json_error("Announcement requires nodeId and endpoint", 400)

        node_id = str(payload["nodeId"])
        now = time.time()
        admitted = await self.directory.ingest([{
            "name": node_id,
            "endpoint": payload["endpoint"],
            "signature": payload.get("signature"),
            "lastSeen": now,
        }], source="tracker")

        if node_id not in self.announcements and len(self.announcements) >= MAX_ANNOUNCEMENTS:
            oldest = min(self.announcements, key=lambda k: self.announcements[k]["receivedAt"])
            del self.announcements[oldest]
        self.announcements[node_id] = {
            "nodeId": node_id,
            "endpoint": payload["endpoint"],
            "stats": payload.get("stats") or {},
            "content": payload.get("content") or [],
            "verified": admitted > 0,
            "receivedAt": now,
        }
        logger.debug("Announcement from {} (verified={})", node_id, admitted > 0)
        return web.json_response({"success": True, "verified": admitted > 0})

    async def handle_manifest(self, request: web.Request) -> web.Response:
        media = self.database.get_media(request.match_info["media_id"])
        if media is None:
            return _json_error("Media not found", 404)
        return web.json_response(media.to_manifest())

    async def _serve_image(self, directory: Optional[Path], source_id: str) -> web.StreamResponse:
        if directory is None or not _SOURCE_ID_RE.match(source_id):
            return _json_error("Image not found", 404)
        path = directory / f"{source_id}.jpg"
        if not path.is_file():
            return _json_error("Image not found", 404)
        return web.FileResponse(path)

    async def handle_poster(self, request: web.Request) -> web.StreamResponse:
        return await self._serve_image(self.posters_dir, request.match_info["source_id"])

    async def handle_backdrop(self, request: web.Request) -> web.StreamResponse:
        return await self._serve_image(self.backdrops_dir, request.match_info["source_id"])

    async def handle_vote(self, request: web.Request) -> web.Response:
        entry_id = request.match_info["entry_id"]
        payload = await self._read_json(request)
        if not isinstance(payload, dict):
            return _json_error("Invalid vote payload", 400)

        voter = payload.get("voter")
        signature = payload.get("signature")
        try:
            value = int(payload.get("value"))
        except (TypeError, ValueError):
            return _json_error("Vote value must be 1 or -1", 400)
        if value not in (1, -1) or not voter or not signature:
            return _json_error("Vote requires voter, value (1 or -1) and signature", 400)

        if not addresses_equal(recover_signer(vote_message(entry_id, value), signature), voter):
            return _json_error("Invalid signature: signer does not match voter", 401)

        entry = self.store.record_vote(entry_id, voter, value)
        if entry is None:
            return _json_error("Catalog entry not found", 404)
        return web.json_response({
            "id": entry.id,
            "trustScore": entry.trust_score,
            "upvotes": entry.upvotes,
            "downvotes": entry.downvotes
        })

    # Playback endpoints

    def _decision_response(self, decision) -> web.Response:
        return web.json_response(decision.to_dict(), status=decision.http_status)

    async def handle_auth(self, request: web.Request) -> web.Response:
        link_id = request.query.get("linkId")
        if not link_id:
            return _json_error("linkId is required", 400)
        decision = await self.admission.authorize(link_id, request.remote, request.query.get("wallet"))
        return self._decision_response(decision)

    async def handle_ad_proof(self, request: web.Request) -> web.Response:
        try:
            proof = AdViewProof.from_dict(await self._read_json(request))
        except ValueError as e:
            return _json_error(str(e), 400)
        return self._decision_response(await self.admission.submit_ad_proof(proof, request.remote))

    async def handle_premium_proof(self, request: web.Request) -> web.Response:
        try:
            proof = PremiumViewProof.from_dict(await self._read_json(request))
        except ValueError as e:
            return _json_error(str(e), 400)
        return self._decision_response(await self.admission.submit_premium_proof(proof, request.remote))

    async def handle_end_session(self, request: web.Request) -> web.Response:
        if not self.admission.end_session(request.match_info["token"]):
            return _json_error("Session not found", 404)
        return web.json_response({"success": True})

    async def handle_map(self, request: web.Request) -> web.Response:
        link = self.store.get_link(request.match_info["link_id"])
        if link is None:
            return _json_error("Link not found", 404)

        overloaded = self.load_monitor.is_overloaded() if self.load_monitor is not None else False
        session = self.admission.session_for(request.remote, link.id)
        viewer = request.query.get("viewer")
        bypass = link.is_ad or is_loopback(request.remote) or addresses_equal(viewer, link.hoster_address)

        live_map = {k: v for k, v in link.metadata.items() if k != "key"}
        live_map.update({
            "id": link.id,
            "status": "busy" if overloaded or link.at_capacity else "online",
            "publicEndpoint": f"{self.directory.identity.endpoint}/stream/{link.id}/stream",
            "adRequired": not (bypass or session is not None),
            "stats": {
                "activeStreams": link.max_streams if overloaded else link.active_streams,
                "maxStreams": link.max_streams
            }
        })
        return web.json_response(live_map)

    async def handle_stream(self, request: web.Request) -> web.StreamResponse:
        """
        Serve link bytes.

        Non-ad content needs a live session (token query/header, or the
        client's session). The stream connection is attached to the session
        and detached when the response ends, however it ends.
        """
        link = self.store.get_link(request.match_info["link_id"])
        if link is None:
            return _json_error("Link not found", 404)

        session = None
        if not link.is_ad:
            token = request.query.get("token") or request.headers.get("X-Stream-Token")
            session = self.admission.validate_session(token) or self.admission.session_for(request.remote, link.id)
            if session is None and is_loopback(request.remote):
                session = self.admission.create_session(link.id, request.remote)
            if session is None:
                return _json_error("Ad view required", 402)

        path = Path(link.file_path)
        if not path.is_file():
            return _json_error("Content bytes missing", 404)
        size = path.stat().st_size

        try:
            byte_range = parse_range(request.headers.get("Range"), size)
        except ValueError:
            return web.Response(status=416, headers={"Content-Range": f"bytes */{size}"})

        decrypt = request.query.get("decrypt") == "true"
        key = request.query.get("key") or link.decryption_key
        iv = link.metadata.get("iv")
        if decrypt:
            if not key or not iv:
                return _json_error("Missing key for decryption", 400)
            try:
                valid = len(bytes.fromhex(key)) == 32 and len(bytes.fromhex(iv)) == 16
            except ValueError:
                valid = False
            if not valid:
                return _json_error("Key must be 32 hex bytes and IV 16", 400)

        start, end = byte_range if byte_range else (0, size - 1)
        response = web.StreamResponse(status=206 if byte_range else 200)
        response.headers["Accept-Ranges"] = "bytes"
        response.headers["Access-Control-Allow-Origin"] = "*"
        response.content_type = link.metadata.get("mimeType", "video/mp4") if decrypt else "application/octet-stream"
        if byte_range:
            response.headers["Content-Range"] = f"bytes {start}-{end}/{size}"
        response.content_length = max(0, end - start + 1)

        if session is not None:
            self.admission.attach_connection(session)
        try:
            await response.prepare(request)
            with open(path, "rb") as f:
                if size == 0:
                    pass  # Nothing to send
                elif decrypt:
                    for chunk in self.store.cipher.iter_decrypt_range(f, key, iv, start, end):
                        await response.write(chunk)
                else:
                    f.seek(start)
                    remaining = end - start + 1
                    while remaining > 0:
                        chunk = f.read(min(CHUNK_SIZE, remaining))
                        if not chunk:
                            break
                        await response.write(chunk)
                        remaining -= len(chunk)
            await response.write_eof()
            return response
        except ConnectionResetError:
            logger.debug("Client disconnected from {}", link.id)
            return response
        finally:
            if session is not None:
                self.admission.detach_connection(session)
