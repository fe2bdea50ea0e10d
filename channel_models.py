from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

PLAYLIST_TYPES = ('mag', 'stalker', 'xtream', 'm3u')

MAG_TYPES = ('mag', 'stalker')

# snake_case attribute -> camelCase wire key, where they differ
_CHANNEL_WIRE_KEYS = {
    'channel_id': 'channelId',
    'playlist_id': 'playlistId',
    'original_name': 'originalName',
    'source_type': 'sourceType',
    'tvg_id': 'tvgId',
    'tvg_name': 'tvgName',
    'tvg_logo': 'tvgLogo',
    'tvg_shift': 'tvgShift',
    'epg_id': 'epgId',
    'genre_id': 'tvGenreId',
    'is_hd': 'isHd',
    'is_4k': 'is4k',
    'use_http_tmp_link': 'useHttpTmpLink',
    'age_restricted': 'ageRestricted',
    'http_headers': 'httpHeaders',
    'is_visible': 'isVisible',
    'custom_name': 'customName',
    'custom_logo': 'customLogo',
    'custom_order': 'customOrder',
}

_PLAYLIST_WIRE_KEYS = {
    'source_url': 'sourceUrl',
    'mac_address': 'macAddress',
    'xtream_username': 'xtreamUsername',
    'xtream_password': 'xtreamPassword',
    'last_sync': 'lastSync',
    'channel_count': 'channelCount',
    'sync_data': 'syncData',
    'channel_settings': 'channelSettings',
}

OVERRIDE_FIELDS = ('is_visible', 'custom_name', 'custom_logo', 'custom_order')


def _to_wire(obj, wire_keys: Dict[str, str]) -> Dict[str, Any]:
    return {wire_keys.get(f.name, f.name): getattr(obj, f.name) for f in fields(obj)}


def _from_wire(cls, data: Dict[str, Any], wire_keys: Dict[str, str]) -> Dict[str, Any]:
    kwargs = {}
    for f in fields(cls):
        wire = wire_keys.get(f.name, f.name)
        if wire in data:
            kwargs[f.name] = data[wire]
        elif f.name in data:
            kwargs[f.name] = data[f.name]
    return kwargs


@dataclass
class Channel:
    channel_id: str
    name: str
    playlist_id: str = ''
    original_name: str = ''
    logo: str = ''
    group: str = 'Uncategorized'
    # Opaque vendor string: a bare URL, a player invocation ("ffmpeg http://...") or a portal token
    cmd: str = ''
    source_type: str = 'm3u'
    tvg_id: str = ''
    tvg_name: str = ''
    tvg_logo: str = ''
    tvg_shift: str = ''
    duration: str = ''
    epg_id: str = ''
    genre_id: Optional[str] = None
    is_hd: bool = False
    is_4k: bool = False
    use_http_tmp_link: bool = False
    age_restricted: bool = False
    http_headers: Dict[str, str] = field(default_factory=dict)
    is_visible: bool = True
    custom_name: Optional[str] = None
    custom_logo: Optional[str] = None
    custom_order: Optional[int] = None

    @property
    def url(self) -> str:
        return self.cmd

    def overrides(self) -> Dict[str, Any]:
        return {name: getattr(self, name) for name in OVERRIDE_FIELDS}

    def to_dict(self) -> Dict[str, Any]:
        data = _to_wire(self, _CHANNEL_WIRE_KEYS)
        data['url'] = self.cmd
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Channel':
        kwargs = _from_wire(cls, data, _CHANNEL_WIRE_KEYS)
        if 'cmd' not in kwargs and data.get('url'):
            kwargs['cmd'] = data['url']
        kwargs['channel_id'] = str(kwargs.get('channel_id', ''))
        kwargs.setdefault('name', '')
        return cls(**kwargs)


@dataclass
class ChannelSettings:
    """Per-channel admin overrides kept on the playlist"""
    channel_id: str
    is_visible: bool = True
    custom_name: Optional[str] = None
    custom_logo: Optional[str] = None
    custom_order: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ChannelSettings':
        return cls(
            channel_id=str(data.get('channelId', data.get('channel_id', ''))),
            is_visible=data.get('isVisible', data.get('is_visible', True)),
            custom_name=data.get('customName', data.get('custom_name')),
            custom_logo=data.get('customLogo', data.get('custom_logo')),
            custom_order=data.get('customOrder', data.get('custom_order')),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'channelId': self.channel_id,
            'isVisible': self.is_visible,
            'customName': self.custom_name,
            'customLogo': self.custom_logo,
            'customOrder': self.custom_order,
        }


@dataclass
class Playlist:
    id: str
    source_url: str
    name: str = ''
    type: Optional[str] = None
    mac_address: Optional[str] = None
    xtream_username: Optional[str] = None
    xtream_password: Optional[str] = None
    last_sync: Optional[str] = None
    channel_count: int = 0
    status: str = 'active'
    error: Optional[str] = None
    sync_data: Dict[str, Any] = field(default_factory=dict)
    channel_settings: List[ChannelSettings] = field(default_factory=list)

    @property
    def is_mag(self) -> bool:
        return self.type in MAG_TYPES

    @property
    def has_xtream_credentials(self) -> bool:
        return bool(self.xtream_username and self.xtream_password)

    def settings_for(self, channel_id: str) -> Optional[ChannelSettings]:
        for setting in self.channel_settings:
            if setting.channel_id == channel_id:
                return setting
        return None

    def validate(self) -> List[str]:
        """Returns the list of violated credential invariants (empty when consistent)."""
        problems = []
        if self.type == 'xtream' and not self.has_xtream_credentials:
            problems.append('xtream playlist without username/password')
        if self.is_mag and not self.mac_address:
            problems.append(f'{self.type} playlist without MAC address')
        if self.type is not None and self.type not in PLAYLIST_TYPES:
            problems.append(f'unknown playlist type {self.type!r}')
        return problems

    def to_dict(self) -> Dict[str, Any]:
        data = _to_wire(self, _PLAYLIST_WIRE_KEYS)
        data['channelSettings'] = [s.to_dict() for s in self.channel_settings]
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Playlist':
        kwargs = _from_wire(cls, data, _PLAYLIST_WIRE_KEYS)
        if 'id' not in kwargs and '_id' in data:
            kwargs['id'] = data['_id']
        kwargs['id'] = str(kwargs.get('id', ''))
        kwargs.setdefault('source_url', '')
        kwargs['channel_settings'] = [
            ChannelSettings.from_dict(s) for s in (kwargs.get('channel_settings') or [])
        ]
        return cls(**kwargs)


@dataclass
class ResolvedStream:
    """Output of the resolver: consumed immediately by the proxy, never stored."""
    uri: str
    dialect: str
    headers: Dict[str, str] = field(default_factory=dict)
    mac: Optional[str] = None


@dataclass
class SyncReport:
    playlist_id: str
    channel_count: int
    status: str
    inserted: int = 0
    deleted: int = 0
    updated: int = 0
    playlist_type: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'playlistId': self.playlist_id,
            'channelCount': self.channel_count,
            'status': self.status,
            'inserted': self.inserted,
            'deleted': self.deleted,
            'updated': self.updated,
            'type': self.playlist_type,
        }


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).strftime("%Y-%m-%dT%H:%M:%SZ")
