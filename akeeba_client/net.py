import binascii, threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional, Protocol, Union

import httpx
import structlog

from akeeba_common.crypto import b64d
from akeeba_common.messages import DecodeResult
from akeeba_common.protocol import ENC, build_url, decode_response, encode_request

from akeeba_client.events import COMPLETED, ERROR, STARTED, STEP, EventChannel, Handler
from akeeba_client.sink import FileSink, PathLike, Sink
from akeeba_client.state import (CANCELLED, COMPLETED as DONE, FAILED, BackupState,
                                 DownloadState, UpdateStage, UpdateState)

logger = structlog.get_logger()

BACKUP_TAG = "json"          # tag the server gives backups started through the API
SRP_TAG = "restorepoint"     # tag of System Restore Point backups
DEFAULT_TIMEOUT = 30.0
EMPTY_LOG = "Empty Log File"

Callback = Callable[[Any], None]


class AkeebaError(Exception):
    """Base class of the errors raised while talking to the backup service."""
    def __init__(self, message: str, method: Optional[str] = None):
        super().__init__(message)
        self.method = method

    def to_event(self) -> Dict[str, Any]:
        return {"error": str(self), "method": self.method}

class TransportError(AkeebaError):
    """Raised when the HTTP call fails or answers with a status other than 200."""
    def __init__(self, message: str, method: Optional[str] = None,
                 status_code: Optional[int] = None, body: Optional[str] = None):
        super().__init__(message, method)
        self.status_code = status_code
        self.body = body

    def to_event(self) -> Dict[str, Any]:
        event = super().to_event()
        event.update(status_code=self.status_code, body=self.body)
        return event

class DecodeError(AkeebaError):
    """Raised when a response cannot be decoded (strict mode, or a corrupted chunk)."""
    pass

class SinkError(AkeebaError):
    """Raised when the destination cannot be created or appended to."""
    pass

class OperationCancelled(AkeebaError):
    """Raised inside a loop when its cancel token has been set."""
    pass


@dataclass
class TransportResponse:
    status_code: Optional[int]          # None when no HTTP response was received
    content: bytes = b""
    error: Optional[BaseException] = None

    @property
    def text(self) -> str:
        return self.content.decode(ENC, errors="replace")

    @property
    def ok(self) -> bool:
        return self.error is None and self.status_code == 200


class Transport(Protocol):
    def send(self, url: str) -> TransportResponse: ...


class HttpxTransport:
    ''' Default transport: one GET per call on a shared httpx client '''
    def __init__(self, timeout: float = DEFAULT_TIMEOUT, client: Optional[httpx.Client] = None):
        self.client = client or httpx.Client(timeout=timeout, follow_redirects=True)

    def send(self, url: str) -> TransportResponse:
        try:
            response = self.client.get(url)
        except httpx.HTTPError as e:
            return TransportResponse(status_code=None, error=e)
        return TransportResponse(status_code=response.status_code, content=response.content)

    def close(self) -> None:
        self.client.close()


def has_run(data: Any) -> bool:
    ''' The server reports "more work to do" with HasRun; hasRun is accepted too '''
    if not isinstance(data, Mapping):
        return False
    return bool(data.get("HasRun", data.get("hasRun")))


class BackupClient:
    '''
    Client of the Akeeba Backup JSON API of one site.

    Long running operations (backup, srp, download, download_direct, get_log, update)
    drive the server step by step and report through the event channel; they return
    their final state object. Simple queries return the decoded payload.
    '''
    def __init__(self, url: str, secret: str,
                 transport: Optional[Transport] = None,
                 sink: Optional[Sink] = None,
                 events: Optional[EventChannel] = None,
                 strict: bool = False,
                 timeout: float = DEFAULT_TIMEOUT):
        self.url, self.secret = url, secret
        self._owns_transport = transport is None   # only a transport built here is closed here
        self.transport = transport if transport is not None else HttpxTransport(timeout=timeout)
        self.sink = sink if sink is not None else FileSink()
        self.events = events if events is not None else EventChannel()
        self.strict = strict   # surface decode failures instead of reading them as "no data"

    def __enter__(self) -> "BackupClient":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def close(self) -> None:
        ''' Close the default transport; a transport passed in stays open for its owner '''
        if not self._owns_transport:
            return
        close = getattr(self.transport, "close", None)
        if close is not None:
            close()

    def on(self, name: str, handler: Handler) -> Handler:
        ''' Subscribe to started / step / completed / error '''
        return self.events.on(name, handler)

    def spawn(self, operation: Union[str, Callable[..., Any]], *args, **kwargs) -> threading.Thread:
        '''
        Run an operation in a daemon thread and return the started thread.
        Input:
            - operation: a method name (ie: "backup") or any callable
            - args/kwargs: forwarded to the operation
        '''
        target = getattr(self, operation) if isinstance(operation, str) else operation
        thread = threading.Thread(target=target, args=args, kwargs=kwargs, daemon=True)
        thread.start()
        return thread

    # ------------------------------------------------------------------ backups

    def backup(self, profile: Optional[int] = None, description: Optional[str] = None,
               comment: Optional[str] = None, tag: str = BACKUP_TAG,
               cancel: Optional[threading.Event] = None) -> BackupState:
        '''
        Back up the whole site. Steps are requested under tag (default "json").
        Fires started once the server accepted the backup, step for every intermediate
        step and completed when HasRun turns false.
        '''
        data: Dict[str, Any] = {}
        if profile is not None:
            data["profile"] = int(profile)
        if description is not None:
            data["description"] = description
        if comment is not None:
            data["comment"] = comment
        return self._run_backup("startBackup", data or None, tag, cancel)

    def srp(self, extension: str, type: str, group: Optional[str] = None,
            cancel: Optional[threading.Event] = None) -> BackupState:
        '''
        Take a System Restore Point of one extension.
        Inputs:
            - extension: extension name / element (ie: akeeba)
            - type: extension type (ie: component)
            - group: plugin group (ie: system), only for plugins
        '''
        data = {"name": extension, "type": type, "group": group, "tag": SRP_TAG}
        return self._run_backup("startSRPBackup", data, SRP_TAG, cancel)

    def _run_backup(self, method: str, data: Optional[Dict[str, Any]], tag: str,
                    cancel: Optional[threading.Event]) -> BackupState:
        state = BackupState(tag=tag)
        log = logger.bind(method=method, tag=tag)
        try:
            self._check_cancel(cancel, method)
            state.data = self._payload(method, data)
            state.has_run = has_run(state.data)
            self.events.emit(STARTED, {"data": state.data})

            while state.has_run:
                self._check_cancel(cancel, "stepBackup")
                state.data = self._payload("stepBackup", {"tag": tag})
                state.has_run = has_run(state.data)
                if state.has_run:
                    state.steps += 1
                    log.debug("backup_step", step=state.steps)
                    self.events.emit(STEP, {"data": state.data})
        except AkeebaError as e:
            return self._abort(state, e, log)
        return self._complete(state, {"data": state.data}, log, steps=state.steps)

    # ---------------------------------------------------------------- downloads

    def download(self, backup_id: int, path: PathLike,
                 cancel: Optional[threading.Event] = None) -> DownloadState:
        '''
        Download a backup archive part by part, segment by segment.
        Segments are base64 encoded by the server. An empty segment ends the current part;
        an empty first segment means there are no more parts.
        Fires step for every segment written and completed at the end.
        '''
        state = DownloadState(backup_id=int(backup_id), destination=str(path))
        log = logger.bind(method="download", backup_id=state.backup_id)
        try:
            self._create(path, "download")
            while True:
                self._check_cancel(cancel, "download")
                state.requests += 1
                chunk = self._payload("download", {
                    "backup_id": state.backup_id,
                    "part_id": state.part_id,
                    "segment": state.segment_id,
                })
                if chunk:
                    self.events.emit(STEP, {"file": state.destination, "part": state.part_id,
                                            "segment": state.segment_id})
                    data = self._b64decode(chunk, "download")
                    self._append(path, data, "download")
                    state.bytes_written += len(data)
                    log.debug("download_chunk", part=state.part_id, segment=state.segment_id, size=len(data))
                    state.next_segment()
                elif state.segment_id != 1:
                    state.next_part()
                else:
                    break
        except AkeebaError as e:
            return self._abort(state, e, log)
        return self._complete(state, {"file": state.destination}, log,
                              requests=state.requests, size=state.bytes_written)

    def download_direct(self, backup_id: int, path: PathLike,
                        cancel: Optional[threading.Event] = None) -> DownloadState:
        '''
        Download a backup archive without encryption nor segments: every call returns
        one whole part as raw bytes, an empty body means there are no more parts.
        '''
        state = DownloadState(backup_id=int(backup_id), destination=str(path))
        log = logger.bind(method="downloadDirect", backup_id=state.backup_id)
        try:
            self._create(path, "downloadDirect")
            while True:
                self._check_cancel(cancel, "downloadDirect")
                state.requests += 1
                response = self._request("downloadDirect", {"backup_id": state.backup_id,
                                                            "part_id": state.part_id})
                if not response.content:
                    break
                self.events.emit(STEP, {"file": state.destination, "part": state.part_id})
                self._append(path, response.content, "downloadDirect")
                state.bytes_written += len(response.content)
                log.debug("download_chunk", part=state.part_id, size=len(response.content))
                state.next_part()
        except AkeebaError as e:
            return self._abort(state, e, log)
        return self._complete(state, {"file": state.destination}, log,
                              requests=state.requests, size=state.bytes_written)

    def get_log(self, tag: str, path: PathLike) -> bool:
        '''
        Download the log file of a backup tag (ie: remote, restorepoint) into path.
        Fires completed once written, or error when the server has no log content.
        Output: True when the log was written
        '''
        log = logger.bind(method="getLog", tag=tag)
        try:
            self._create(path, "getLog")
            content = self._payload("getLog", {"tag": tag})
            if not content:
                raise AkeebaError(EMPTY_LOG, "getLog")
            self._append(path, self._b64decode(content, "getLog"), "getLog")
        except AkeebaError as e:
            log.warning("operation_failed", error=str(e))
            self.events.emit(ERROR, e.to_event())
            return False
        log.info("operation_completed", file=str(path))
        self.events.emit(COMPLETED, {"file": str(path)})
        return True

    # ------------------------------------------------------------------ updates

    def update(self, cancel: Optional[threading.Event] = None) -> UpdateState:
        '''
        Run the whole update of the component: download, extract, install.
        Fires step after each stage and completed with the install response.
        '''
        state = UpdateState()
        log = logger.bind(method="update")
        try:
            while state.stage is not UpdateStage.COMPLETED:
                self._check_cancel(cancel, state.stage.value)
                state.responses[state.stage.value] = self._update_stage(state.stage)
                state.stage = state.stage.next()
        except AkeebaError as e:
            state.error = str(e)
            return self._abort(state, e, log)
        return self._complete(state, {"data": state.responses[UpdateStage.INSTALL.value]}, log)

    def update_download(self, callback: Optional[Callback] = None) -> Any:
        ''' Download the update package; fires step '''
        return self._standalone_stage(UpdateStage.DOWNLOAD, callback)

    def update_extract(self, callback: Optional[Callback] = None) -> Any:
        ''' Extract the downloaded update package; fires step '''
        return self._standalone_stage(UpdateStage.EXTRACT, callback)

    def update_install(self, callback: Optional[Callback] = None) -> Any:
        ''' Install the extracted update package; fires step '''
        return self._standalone_stage(UpdateStage.INSTALL, callback)

    def _update_stage(self, stage: UpdateStage) -> Any:
        data = self._payload(stage.value)
        self.events.emit(STEP, {"stage": stage.value, "data": data})
        return data

    def _standalone_stage(self, stage: UpdateStage, callback: Optional[Callback]) -> Any:
        data = self._update_stage(stage)
        if callback is not None:
            callback(data)
        return data

    # ------------------------------------------------------------------ queries

    def get_version(self, callback: Optional[Callback] = None) -> Any:
        ''' API and component version: api, component, date, edition, updateinfo '''
        return self._query("getVersion", None, callback)

    def get_profiles(self, callback: Optional[Callback] = None) -> Any:
        ''' List of backup profiles, each with id and name '''
        return self._query("getProfiles", None, callback)

    def list_backups(self, from_: int = 0, limit: int = 50, callback: Optional[Callback] = None) -> Any:
        '''
        A page of backup records, latest first.
        Inputs:
            - from_: starting offset of the list
            - limit: number of records; 0 returns all of them (may time out the server)
        '''
        return self._query("listBackups", {"from": int(from_), "limit": int(limit)}, callback)

    def get_backup_info(self, backup_id: int, callback: Optional[Callback] = None) -> Any:
        return self._query("getBackupInfo", {"backup_id": int(backup_id)}, callback)

    def delete(self, backup_id: int, callback: Optional[Callback] = None) -> Any:
        ''' Delete the backup record and its files '''
        return self._query("delete", {"backup_id": int(backup_id)}, callback)

    def delete_files(self, backup_id: int, callback: Optional[Callback] = None) -> Any:
        ''' Delete only the files of a backup; the record stays, marked obsolete '''
        return self._query("deleteFiles", {"backup_id": int(backup_id)}, callback)

    def update_get_information(self, force: bool = False, callback: Optional[Callback] = None) -> Any:
        ''' Update status from Live Update; force=True bypasses the cached information '''
        return self._query("updateGetInformation", {"force": 1 if force else 0}, callback)

    def _query(self, method: str, data: Optional[Dict[str, Any]], callback: Optional[Callback]) -> Any:
        payload = self._payload(method, data)
        if callback is not None:
            callback(payload)
        return payload

    # ----------------------------------------------------------------- plumbing

    def _request(self, method: str, data: Optional[Dict[str, Any]] = None) -> TransportResponse:
        envelope = encode_request(method, self.secret, data)
        logger.debug("request_sent", method=method, data=data)
        response = self.transport.send(build_url(self.url, envelope))
        if response.error is not None:
            raise TransportError(f"{method}: {response.error}", method, body=None)
        if response.status_code != 200:
            raise TransportError(f"{method}: HTTP {response.status_code}", method,
                                 status_code=response.status_code, body=response.text)
        return response

    def _call(self, method: str, data: Optional[Dict[str, Any]] = None) -> DecodeResult:
        result = decode_response(self._request(method, data).content)
        logger.debug("response_decoded", method=method, status=result.status.value)
        return result

    def _payload(self, method: str, data: Optional[Dict[str, Any]] = None) -> Any:
        '''
        Send a call and return its payload. A failed decode raises DecodeError in strict
        mode; otherwise it is logged and read as an empty payload (None).
        '''
        result = self._call(method, data)
        if result.is_failed:
            if self.strict:
                raise DecodeError(f"{method}: {result.reason}", method)
            logger.warning("decode_failed", method=method, reason=result.reason)
            return None
        return result.data

    def _b64decode(self, chunk: Any, method: str) -> bytes:
        if not isinstance(chunk, str):
            raise DecodeError(f"{method}: expected base64 text, got {type(chunk).__name__}", method)
        try:
            return b64d(chunk)
        except (binascii.Error, ValueError) as e:
            raise DecodeError(f"{method}: invalid base64 data: {e}", method) from e

    def _create(self, path: PathLike, method: str) -> None:
        try:
            self.sink.create_or_truncate(path)
        except OSError as e:
            raise SinkError(f"cannot create {path}: {e}", method) from e

    def _append(self, path: PathLike, data: bytes, method: str) -> None:
        try:
            self.sink.append(path, data)
        except OSError as e:
            raise SinkError(f"cannot write {path}: {e}", method) from e

    @staticmethod
    def _check_cancel(cancel: Optional[threading.Event], method: str) -> None:
        if cancel is not None and cancel.is_set():
            raise OperationCancelled("Operation cancelled", method)

    def _complete(self, state, payload: Dict[str, Any], log, **context):
        state.status = DONE
        log.info("operation_completed", **context)
        self.events.emit(COMPLETED, payload)
        return state

    def _abort(self, state, error: AkeebaError, log):
        state.status = CANCELLED if isinstance(error, OperationCancelled) else FAILED
        log.warning("operation_failed", status=state.status, error=str(error))
        self.events.emit(ERROR, error.to_event())
        return state
