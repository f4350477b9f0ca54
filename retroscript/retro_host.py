"""
Host collaborators: the desktop a script drives.

`RetroHost` is the contract (App Launcher, Window Controller, State Store,
File Store, dialog surface). `install_host_commands` wires a host into a
CommandBus as command and query handlers. `HeadlessHost` and
`MemoryFileStore` are complete in-memory implementations.
"""
import datetime
import itertools
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence, Union

from retroscript.retro_datatypes import Payload
from retroscript.retro_events import Event

PathLike = Union[str, Sequence[str]]


def script_api(func):
    """A decorator to explicitly mark host methods as callable from scripts."""
    func._is_script_api = True
    return func


def split_path(path: PathLike) -> List[str]:
    """'C:/Scripts/a.retro' -> ['C:', 'Scripts', 'a.retro']. Lists pass through."""
    if path is None:
        return []
    if isinstance(path, (list, tuple)):
        return [str(p) for p in path if str(p)]
    return [p for p in str(path).replace('\\', '/').split('/') if p]


def join_path(parts: Sequence[str]) -> str:
    return '/'.join(parts)


# ===================================================================
# File Store
# ===================================================================

class FileStore(ABC):
    """Hierarchical file store addressed by ordered path segments."""

    @abstractmethod
    def get_node(self, path: PathLike) -> Optional[Dict[str, Any]]: raise NotImplementedError
    @abstractmethod
    def read_file(self, path: PathLike) -> str: raise NotImplementedError
    @abstractmethod
    def write_file(self, path: PathLike, content: str): raise NotImplementedError
    @abstractmethod
    def create_directory(self, path: PathLike): raise NotImplementedError
    @abstractmethod
    def delete_file(self, path: PathLike): raise NotImplementedError
    @abstractmethod
    def delete_directory(self, path: PathLike, recursive: bool = False): raise NotImplementedError
    @abstractmethod
    def list_directory(self, path: PathLike) -> List[Dict[str, Any]]: raise NotImplementedError

    def exists(self, path: PathLike) -> bool:
        return self.get_node(path) is not None


def _now() -> str:
    return datetime.datetime.now(datetime.timezone.utc).isoformat()


def _directory(**children) -> Dict[str, Any]:
    return {'type': 'directory', 'children': dict(children)}


class MemoryFileStore(FileStore):
    """File Store over nested dicts. Drives (`C:`) are top-level directories."""

    def __init__(self, tree: Optional[Dict[str, Any]] = None):
        if tree is None:
            tree = {'C:': _directory(Documents=_directory(), Scripts=_directory())}
        self.root = _directory(**tree)

    def get_node(self, path: PathLike) -> Optional[Dict[str, Any]]:
        current = self.root
        for part in split_path(path):
            children = current.get('children')
            if children is None or part not in children:
                return None
            current = children[part]
        return current

    def _parent(self, path: PathLike):
        parts = split_path(path)
        if not parts:
            raise ValueError("Empty path")
        parent = self.get_node(parts[:-1])
        if parent is None or parent.get('type') != 'directory':
            raise FileNotFoundError(f"Parent directory not found: {join_path(parts[:-1])}")
        return parent['children'], parts[-1]

    def read_file(self, path: PathLike) -> str:
        node = self.get_node(path)
        if node is None:
            raise FileNotFoundError(f"File not found: {join_path(split_path(path))}")
        if node.get('type') != 'file':
            raise IsADirectoryError(f"Not a file: {join_path(split_path(path))}")
        return node.get('content', '')

    def write_file(self, path: PathLike, content: str):
        children, name = self._parent(path)
        content = '' if content is None else str(content)
        now = _now()
        existing = children.get(name)
        if existing is not None and existing.get('type') == 'directory':
            raise IsADirectoryError(f"Not a file: {join_path(split_path(path))}")
        if existing is not None:
            existing.update(content=content, size=len(content), modified=now)
            return
        children[name] = {
            'type': 'file',
            'content': content,
            'extension': name.rsplit('.', 1)[1] if '.' in name else 'txt',
            'size': len(content),
            'created': now,
            'modified': now,
        }

    def create_directory(self, path: PathLike):
        children, name = self._parent(path)
        if name in children:
            raise FileExistsError(f"Directory already exists: {join_path(split_path(path))}")
        children[name] = _directory()

    def delete_file(self, path: PathLike):
        children, name = self._parent(path)
        node = children.get(name)
        if node is None:
            raise FileNotFoundError(f"File not found: {join_path(split_path(path))}")
        if node.get('type') != 'file':
            raise IsADirectoryError(f"Not a file: {join_path(split_path(path))}")
        del children[name]

    def delete_directory(self, path: PathLike, recursive: bool = False):
        children, name = self._parent(path)
        node = children.get(name)
        if node is None:
            raise FileNotFoundError(f"Directory not found: {join_path(split_path(path))}")
        if node.get('type') != 'directory':
            raise NotADirectoryError(f"Not a directory: {join_path(split_path(path))}")
        if node['children'] and not recursive:
            raise OSError(f"Directory not empty: {join_path(split_path(path))}")
        del children[name]

    def list_directory(self, path: PathLike) -> List[Dict[str, Any]]:
        node = self.get_node(path)
        if node is None:
            raise FileNotFoundError(f"Path not found: {join_path(split_path(path))}")
        if node.get('type') != 'directory':
            raise NotADirectoryError(f"Not a directory: {join_path(split_path(path))}")
        items = []
        for name, item in node['children'].items():
            items.append({
                'name': name,
                'type': item.get('type'),
                'extension': item.get('extension', ''),
                'size': item.get('size', 0),
                'modified': item.get('modified'),
            })
        return items


# ===================================================================
# Host contract
# ===================================================================

class RetroHost(ABC):
    """The required base class for any desktop exposed to the script engine."""

    @property
    @abstractmethod
    def files(self) -> FileStore: raise NotImplementedError

    @abstractmethod
    def launch_app(self, app_id: str, params: Optional[Payload] = None) -> Payload:
        """Open an app; returns {'appId', 'windowId'}. Raises when the app cannot start."""
        raise NotImplementedError

    @abstractmethod
    def window_op(self, op: str, window_id: Any) -> Payload:
        """op is one of focus, minimize, maximize, restore, close."""
        raise NotImplementedError

    @abstractmethod
    def get_state(self, path: Optional[str] = None) -> Any: raise NotImplementedError

    def list_apps(self) -> List[Payload]:
        return []

    # Dialog surface. None means "no answer": the request then times out.
    def alert(self, message: Any):
        pass

    def confirm(self, message: Any) -> Optional[bool]:
        return None

    def prompt(self, message: Any, default: Any = None) -> Optional[Any]:
        return None

    def notify(self, payload: Payload):
        pass

    def play_sound(self, payload: Payload):
        pass

    # Settings, storage and clipboard. The defaults suit a read-only desktop.
    def set_setting(self, key: str, value: Any) -> Any:
        raise NotImplementedError("Settings are read-only on this host")

    def get_storage(self, key: str) -> Any:
        return None

    def set_storage(self, key: str, value: Any) -> bool:
        return False

    def copy_to_clipboard(self, text: str) -> bool:
        return False


def install_host_commands(commands, host: RetroHost):
    """Register the desktop command and query handlers of host on a CommandBus."""
    events = commands.events

    # --- Apps and windows ---
    def _launch(payload):
        result = host.launch_app(payload.get('appId'), payload.get('params') or {})
        events.emit('app:launched', {'appId': result.get('appId'), 'windowId': result.get('windowId'),
                                     'params': payload.get('params') or {}})
        return dict(result, success=True)

    commands.register('app:launch', _launch)
    commands.register('app:close', lambda p: host.window_op('close', p.get('windowId')))
    for op in ('focus', 'minimize', 'maximize', 'restore', 'close'):
        commands.register(f'window:{op}', lambda p, op=op: host.window_op(op, p.get('windowId')))

    # --- File system ---
    fs = host.files

    def _fs_write(payload):
        fs.write_file(payload.get('path'), payload.get('content'))
        events.emit('fs:file:update', {'path': payload.get('path'), 'content': payload.get('content')})
        return {'path': payload.get('path'), 'written': True}

    def _fs_delete(payload):
        path = payload.get('path')
        node = fs.get_node(path)
        if node is None:
            raise FileNotFoundError(f"Path not found: {path}")
        if node.get('type') == 'directory':
            fs.delete_directory(path, bool(payload.get('recursive')))
        else:
            fs.delete_file(path)
        events.emit('fs:file:delete', {'path': path})
        return {'path': path, 'deleted': True}

    def _fs_mkdir(payload):
        fs.create_directory(payload.get('path'))
        events.emit('fs:directory:create', {'path': payload.get('path')})
        return {'path': payload.get('path'), 'created': True}

    commands.register('fs:read', lambda p: {'path': p.get('path'), 'content': fs.read_file(p.get('path'))})
    commands.register('fs:write', _fs_write)
    commands.register('fs:delete', _fs_delete)
    commands.register('fs:mkdir', _fs_mkdir)

    # --- Dialogs, notifications, sound ---
    async def _dialog_show(payload):
        kind = payload.get('type')
        body = {'message': payload.get('message'), 'title': payload.get('title')}
        body.update(payload.get('options') or {})
        if kind in ('confirm', 'prompt'):
            return await events.request(f'dialog:{kind}', body, payload.get('timeout', 60000))
        events.emit('dialog:alert', body)
        return {'shown': True}

    def _notification(payload):
        events.emit('notification:show', payload)
        return {'shown': True}

    def _sound(payload):
        events.emit('sound:play', payload)
        return {'played': True}

    commands.register('dialog:show', _dialog_show)
    commands.register('notification:show', _notification)
    commands.register('sound:play', _sound)

    def _setting_set(payload):
        key, value = payload.get('key'), payload.get('value')
        if not key:
            raise ValueError("setting:set: missing key")
        old = host.get_state(f'settings.{key}')
        host.set_setting(key, value)
        events.emit('setting:changed', {'key': key, 'value': value, 'oldValue': old})
        return {'key': key, 'value': value, 'set': True}

    commands.register('setting:set', _setting_set)

    def _answer_confirm(event: Event):
        answer = host.confirm(event.payload.get('message'))
        if answer is not None:
            events.respond(event, result=bool(answer))

    def _answer_prompt(event: Event):
        answer = host.prompt(event.payload.get('message'), event.payload.get('default'))
        if answer is not None:
            events.respond(event, result=answer)

    events.on('dialog:alert', lambda e: host.alert(e.payload.get('message')))
    events.on('dialog:confirm', _answer_confirm)
    events.on('dialog:prompt', _answer_prompt)
    events.on('notification:show', lambda e: host.notify(e.payload))
    events.on('sound:play', lambda e: host.play_sound(e.payload))

    # --- Queries ---
    def _windows(_payload):
        return [
            {k: w.get(k) for k in ('id', 'appId', 'title', 'minimized', 'maximized')}
            for w in host.get_state('windows') or []
        ]

    def _fs_exists(payload):
        node = fs.get_node(payload.get('path'))
        return {'path': payload.get('path'), 'exists': node is not None,
                'type': node.get('type') if node else None}

    def _settings(payload):
        key = payload.get('key')
        if key:
            return {key: host.get_state(f'settings.{key}')}
        return host.get_state('settings') or {}

    commands.register_query('windows', _windows)
    commands.register_query('apps', lambda p: host.list_apps())
    commands.register_query('state', lambda p: host.get_state(p.get('path')))
    commands.register_query('settings', _settings)
    commands.register_query('fs:read', lambda p: fs.read_file(p.get('path')))
    commands.register_query('fs:exists', _fs_exists)
    commands.register_query('fs:list', lambda p: fs.list_directory(p.get('path')))


# ===================================================================
# Headless desktop
# ===================================================================

DEFAULT_APPS = ('notepad', 'calculator', 'terminal', 'paint', 'minesweeper', 'mycomputer')


class HeadlessHost(RetroHost):
    """A complete in-memory desktop. Records alerts, notifications and sounds."""

    def __init__(self, apps: Sequence[str] = DEFAULT_APPS, files: Optional[FileStore] = None,
                 confirm_answer: Optional[bool] = True, prompt_answer: Optional[Any] = None):
        self.apps = list(apps)
        self._files = files if files is not None else MemoryFileStore()
        self.state: Dict[str, Any] = {'windows': [], 'settings': {}}
        self.confirm_answer = confirm_answer
        self.prompt_answer = prompt_answer
        self.alerts: List[Any] = []
        self.notifications: List[Payload] = []
        self.sounds: List[Payload] = []
        self.storage: Dict[str, Any] = {}
        self.clipboard: Optional[str] = None
        self._ids = itertools.count(1)

    @property
    def files(self) -> FileStore:
        return self._files

    def launch_app(self, app_id, params=None):
        if app_id not in self.apps:
            raise ValueError(f"Failed to launch app: {app_id}")
        window_id = f"{app_id}-{next(self._ids)}"
        self.state['windows'].append({
            'id': window_id, 'appId': app_id, 'title': app_id.capitalize(),
            'minimized': False, 'maximized': False, 'params': dict(params or {}),
        })
        return {'appId': app_id, 'windowId': window_id}

    def _window(self, window_id):
        for w in self.state['windows']:
            if w['id'] == window_id:
                return w
        raise KeyError(f"Window not found: {window_id}")

    def window_op(self, op, window_id):
        window = self._window(window_id)
        match op:
            case 'close':
                self.state['windows'].remove(window)
            case 'minimize':
                window['minimized'] = True
            case 'maximize':
                window.update(maximized=True, minimized=False)
            case 'restore':
                window.update(maximized=False, minimized=False)
            case 'focus':
                # Focused window moves to the top of the stack.
                self.state['windows'].remove(window)
                self.state['windows'].append(window)
                window['minimized'] = False
            case _:
                raise ValueError(f"Unknown window operation: {op}")
        return {'windowId': window_id}

    def get_state(self, path=None):
        if not path:
            return self.state
        current: Any = self.state
        for key in str(path).split('.'):
            if not isinstance(current, dict) or key not in current:
                return None
            current = current[key]
        return current

    def list_apps(self):
        return [{'id': a, 'name': a.capitalize()} for a in self.apps]

    def alert(self, message):
        self.alerts.append(message)

    def confirm(self, message):
        return self.confirm_answer

    def prompt(self, message, default=None):
        return self.prompt_answer if self.prompt_answer is not None else default

    def notify(self, payload):
        self.notifications.append(payload)

    def play_sound(self, payload):
        self.sounds.append(payload)

    def get_storage(self, key):
        return self.storage.get(key)

    def set_storage(self, key, value):
        self.storage[key] = value
        return True

    def copy_to_clipboard(self, text):
        self.clipboard = text
        return True

    @script_api
    def window_count(self):
        return len(self.state['windows'])

    @script_api
    def get_setting(self, key, default=None):
        return self.state['settings'].get(key, default)

    @script_api
    def set_setting(self, key, value):
        self.state['settings'][key] = value
        return value
