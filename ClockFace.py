#!/usr/bin/env python3

"""
Clock Face Generator
Declarative dial configuration, radial scale layout, and print-ready PNG/SVG export.

Table of Contents
   1. Setup
   2. Configuration
   3. Geometry Functions
   4. Render Pipeline
   5. Background Images
   6. Output Backends
   7. Export
   8. Presets
   9. Commands
"""

# ----------------------1. Setup----------------------------

import base64
import io
import math
import os
import re
import tempfile
import threading
import time
import urllib.request
from concurrent.futures import Executor, Future
from contextlib import contextmanager
from dataclasses import dataclass, field, fields, is_dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from functools import cache
from itertools import chain
from typing import Callable

import toml
from PIL import Image, ImageColor, ImageDraw, ImageFont
import drawsvg as svg


# Angular constants:
DEG_FULL = 360
DEG_SEMI = DEG_FULL // 2
DEG_RT = DEG_SEMI // 2

REFERENCE_DPI = 72
"""on-screen DPI that the logical canvas size is measured in"""
RADIUS_FRAC = 0.4
"""dial radius as a fraction of the smaller canvas side"""
RING_GAP = 10
"""distance of the decorative outer ring beyond the dial radius"""
MAX_TICKS = DEG_FULL * 10
MAX_IMAGE_BYTES = 5 * 1024 * 1024

XY = tuple[float, float]
WH = tuple[int, int]


class Color(Enum):
    WHITE, BLACK = '#ffffff', '#000000'
    RING = '#e2e8f0'  # outer frame of the dial
    LOADING_LABEL = '#666666'

    @staticmethod
    @cache
    def to_pil(col_spec, alpha: int = 255):
        col = col_spec.value if isinstance(col_spec, Color) else col_spec
        try:
            rgb = ImageColor.getrgb(col)
        except (ValueError, AttributeError, TypeError):
            rgb = ImageColor.getrgb(Color.BLACK.value)
        return rgb if len(rgb) == 4 else rgb + (alpha,)


class BgKind(Enum):
    SOLID, GRADIENT, IMAGE, PATTERN = 'solid', 'gradient', 'image', 'pattern'

    @classmethod
    def _missing_(cls, value):
        if value == 'color':  # preset files written for the web editor say 'color'
            return cls.SOLID
        return None


class GradientKind(Enum): LINEAR, RADIAL = 'linear', 'radial'
class PatternKind(Enum): NONE, GRID, DOTS, LINES = 'none', 'grid', 'dots', 'lines'
class TickShape(Enum): LINE, TRIANGLE, CIRCLE, RECTANGLE = 'line', 'triangle', 'circle', 'rectangle'
class Placement(Enum): INSIDE, OUTSIDE, CENTER = 'inside', 'outside', 'center'
class MinorShape(Enum): LINE, DOT = 'line', 'dot'
class NumeralStyle(Enum): ARABIC, ROMAN, CHINESE, NONE, CUSTOM = 'arabic', 'roman', 'chinese', 'none', 'custom'
class RotationMode(Enum): RADIAL, HORIZONTAL = 'radial', 'horizontal'
class CenterStyle(Enum): CIRCLE, DECORATIVE, NONE = 'circle', 'decorative', 'none'


class OutFormat(Enum):
    PNG, SVG = 'png', 'svg'


class Font:
    """Font families are CSS-style lists, e.g. 'Arial, sans-serif'; the first one found wins."""
    DEFAULT_FAMILY = 'Arial, sans-serif'
    FILE_NAMES = {
        'arial': 'arial.ttf',
        'times new roman': 'times.ttf',
        'simsun': 'simsun.ttc',
        'sans-serif': 'DejaVuSans.ttf',
        'serif': 'DejaVuSerif.ttf',
        'monospace': 'DejaVuSansMono.ttf',
    }

    @staticmethod
    def families_of(font_family: str) -> list[str]:
        return [name.strip().strip('"\'') for name in (font_family or '').split(',') if name.strip()]

    @classmethod
    @cache
    def get_truetype_font(cls, font_family: str, fs: int):
        for name in cls.families_of(font_family):
            font_name = cls.FILE_NAMES.get(name.lower(), name)
            if not os.path.splitext(font_name)[1]: font_name += '.ttf'
            try:
                return ImageFont.truetype(font_name, fs)
            except OSError:
                continue
        return ImageFont.load_default(fs)

    @classmethod
    def font_for(cls, font_family: str, font_size: float, scale: float = 1):
        return cls.get_truetype_font(font_family, max(1, round(font_size * scale)))


class ConfigError(ValueError):
    """A configuration patch names an unknown section or field, or carries a value of the wrong type."""


class ImageLoadFailure(Exception):
    pass


class ExportError(Exception):
    pass


class ExportSurfaceUnavailable(ExportError):
    pass


class ExportSerializationFailure(ExportError):
    pass


class ExportBusy(ExportError):
    pass


# ----------------------2. Configuration----------------------------


@dataclass(frozen=True)
class Canvas:
    width: int = 800
    height: int = 800
    dpi: int = REFERENCE_DPI
    background_color: str = Color.WHITE.value
    transparent: bool = False


@dataclass(frozen=True)
class SolidFill:
    color: str


@dataclass(frozen=True)
class Gradient:
    kind: GradientKind = GradientKind.RADIAL
    colors: tuple[str, ...] = ('#ffffff', '#e2e8f0')
    angle: float = 0
    """degrees clockwise; 0 runs the linear gradient from the top-left to the bottom-right corner"""

    def stops(self, fallback: str) -> tuple[str, str]:
        colors = tuple(self.colors) or (fallback,)
        return colors[0], colors[1] if len(colors) > 1 else colors[0]


@dataclass(frozen=True)
class ImageFill:
    url: str = ''
    opacity: float = 1
    scale: float = 1


@dataclass(frozen=True)
class Pattern:
    kind: PatternKind = PatternKind.NONE
    color: str = '#cbd5e1'
    size: int = 10


@dataclass(frozen=True)
class PatternFill:
    pattern: Pattern
    color: str


@dataclass(frozen=True)
class Background:
    kind: BgKind = BgKind.SOLID
    color: str = '#f8fafc'
    gradient: Gradient = Gradient()
    image: ImageFill = ImageFill()
    pattern: Pattern = Pattern()

    def variant(self):
        """The active fill; inactive sub-sections keep their values for re-toggling but are never rendered."""
        if self.kind == BgKind.GRADIENT:
            return self.gradient
        elif self.kind == BgKind.IMAGE:
            return self.image
        elif self.kind == BgKind.PATTERN:
            return PatternFill(self.pattern, self.color)
        return SolidFill(self.color)


@dataclass(frozen=True)
class MajorScales:
    visible: bool = True
    count: int = 12
    """angular period shared by the major ticks and the numerals"""
    length: float = 30
    stroke_width: float = 3
    color: str = '#334155'
    shape: TickShape = TickShape.LINE
    placement: Placement = Placement.OUTSIDE
    rotation_offset: float = 0


@dataclass(frozen=True)
class MinorScales:
    visible: bool = True
    count: int = 60
    length: float = 15
    stroke_width: float = 1
    color: str = '#94a3b8'
    shape: MinorShape = MinorShape.LINE


@dataclass(frozen=True)
class Numbers:
    visible: bool = True
    style: NumeralStyle = NumeralStyle.ARABIC
    font_family: str = Font.DEFAULT_FAMILY
    font_size: float = 36
    color: str = '#1e293b'
    rotation_mode: RotationMode = RotationMode.RADIAL
    radius_ratio: float = 0.75
    custom_texts: tuple[str, ...] = tuple(str(i + 1) for i in range(12))


@dataclass(frozen=True)
class Center:
    visible: bool = True
    size: float = 10
    color: str = '#dc2626'
    style: CenterStyle = CenterStyle.CIRCLE


SECTIONS = ('canvas', 'background', 'major_scales', 'minor_scales', 'numbers', 'center')


@dataclass(frozen=True)
class DialConfiguration:
    canvas: Canvas = Canvas()
    background: Background = Background()
    major_scales: MajorScales = MajorScales()
    minor_scales: MinorScales = MinorScales()
    numbers: Numbers = Numbers()
    center: Center = Center()

    @classmethod
    def from_dict(cls, config_def: dict):
        return merge_config(cls(), config_def)

    def to_dict(self) -> dict:
        return plain(self)


DEFAULT_CONFIG = DialConfiguration()


def plain(value):
    """Configuration values as TOML-friendly builtins: enums by value, tuples as lists."""
    if is_dataclass(value):
        return {f.name: plain(getattr(value, f.name)) for f in fields(value)}
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, tuple):
        return [plain(v) for v in value]
    return value


def coerce_value(current, value, where: str):
    """Converts a patch value to the type of the value it replaces."""
    if is_dataclass(current):
        if isinstance(value, type(current)):
            return value
        return merge_section(current, value, where)
    if isinstance(current, Enum):
        try:
            return type(current)(value.value if isinstance(value, Enum) else value)
        except ValueError:
            raise ConfigError(f'{where}: {value!r} is not one of {[e.value for e in type(current)]}')
    if isinstance(current, tuple):
        if isinstance(value, (list, tuple)):
            return tuple(value)
    elif isinstance(current, bool):
        if isinstance(value, bool):
            return value
    elif isinstance(current, (int, float)):
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return value
    elif isinstance(current, str):
        if isinstance(value, str):
            return value
    raise ConfigError(f'{where}: expected {type(current).__name__}, got {type(value).__name__}')


def merge_section(section, patch: dict, where: str = None):
    """Shallow merge of patch fields into a section; nested sections merge one level further."""
    where = where or type(section).__name__
    if not isinstance(patch, dict):
        raise ConfigError(f'{where}: patch must be a table of fields, got {type(patch).__name__}')
    names = {f.name for f in fields(section)}
    changes = {}
    for key, value in patch.items():
        if key not in names:
            raise ConfigError(f'Unknown field: {where}.{key}')
        changes[key] = coerce_value(getattr(section, key), value, f'{where}.{key}')
    return replace(section, **changes)


def fit_custom_texts(config: DialConfiguration) -> DialConfiguration:
    """Keeps one custom numeral text per major tick, padding with 1-based indices."""
    count = as_count(config.major_scales.count)
    texts = config.numbers.custom_texts
    if len(texts) == count:
        return config
    texts = tuple(texts[:count]) + tuple(str(i + 1) for i in range(len(texts), count))
    return replace(config, numbers=replace(config.numbers, custom_texts=texts))


def merge_config(config: DialConfiguration, partial: dict) -> DialConfiguration:
    if not isinstance(partial, dict):
        raise ConfigError(f'Configuration must be a table of sections, got {type(partial).__name__}')
    changes = {}
    for section_name, patch in partial.items():
        if section_name not in SECTIONS:
            raise ConfigError(f'Unknown section: {section_name}')
        changes[section_name] = merge_section(getattr(config, section_name), patch, section_name)
    return fit_custom_texts(replace(config, **changes))


class ConfigStore:
    """
    Sole owner of the dial configuration.
    Every mutation replaces the frozen configuration, bumps the version and notifies subscribers.
    """

    def __init__(self, config: DialConfiguration = DEFAULT_CONFIG):
        self._config = config
        self.version = 0
        self._subscribers: list[Callable[[DialConfiguration], None]] = []

    def get(self) -> DialConfiguration:
        return self._config

    def subscribe(self, callback: Callable[[DialConfiguration], None]) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)
        return unsubscribe

    def update(self, section: str, patch: dict):
        self._set(merge_config(self._config, {section: patch}))

    def load_preset(self, preset: dict):
        self._set(merge_config(self._config, preset))

    def load_preset_named(self, preset_name: str):
        self.load_preset(Presets.load(preset_name))

    def reset_to_default(self):
        self._set(DEFAULT_CONFIG)

    def _set(self, config: DialConfiguration):
        self._config = config
        self.version += 1
        for callback in list(self._subscribers):
            callback(config)


# ----------------------3. Geometry Functions----------------------------


def finite(x, default: float = 0.0) -> float:
    try:
        x = float(x)
    except (TypeError, ValueError):
        return default
    return x if math.isfinite(x) else default


def as_size(x) -> float: return max(0.0, finite(x))
def as_count(n) -> int: return min(MAX_TICKS, max(0, int(finite(n))))


def polar_to_point(cx: float, cy: float, radius: float, angle_deg: float) -> XY:
    """Angles run clockwise from 12 o'clock."""
    theta = math.radians(angle_deg)
    return cx + radius * math.sin(theta), cy - radius * math.cos(theta)


def rotate_point(x: float, y: float, cx: float, cy: float, angle_deg: float) -> XY:
    """Rotates (x, y) clockwise on screen around (cx, cy)."""
    theta = math.radians(angle_deg)
    dx, dy = x - cx, y - cy
    return cx + dx * math.cos(theta) - dy * math.sin(theta), cy + dx * math.sin(theta) + dy * math.cos(theta)


def dial_radius(width: float, height: float) -> float:
    return RADIUS_FRAC * min(as_size(width), as_size(height))


def tick_angles(count: int, rotation_offset: float = 0) -> list[float]:
    n = as_count(count)
    offset = finite(rotation_offset)
    return [i * DEG_FULL / n + offset for i in range(n)]


def placement_radius(radius: float, length: float, placement: Placement) -> float:
    if placement == Placement.INSIDE:
        return radius - length
    elif placement == Placement.OUTSIDE:
        return radius + length
    return radius


def regular_polygon(cx: float, cy: float, r: float, sides: int, rotation: float = 0) -> tuple[XY, ...]:
    """First vertex points straight up before rotation."""
    return tuple(polar_to_point(cx, cy, r, k * DEG_FULL / sides + rotation) for k in range(sides))


def rotated_rect(cx: float, cy: float, w: float, h: float, rotation: float) -> tuple[XY, ...]:
    corners = ((cx - w / 2, cy - h / 2), (cx + w / 2, cy - h / 2), (cx + w / 2, cy + h / 2), (cx - w / 2, cy + h / 2))
    return tuple(rotate_point(x, y, cx, cy, rotation) for (x, y) in corners)


def numeral_rotation(angle: float, mode: RotationMode) -> float:
    """Radial numerals turn with their tick but flip on the lower half to stay upright."""
    if mode != RotationMode.RADIAL:
        return 0
    return angle if angle <= DEG_SEMI else angle - DEG_SEMI


ROMAN_NUMERALS = ('I', 'II', 'III', 'IV', 'V', 'VI', 'VII', 'VIII', 'IX', 'X', 'XI', 'XII')
CHINESE_NUMERALS = ('一', '二', '三', '四', '五', '六', '七', '八', '九', '十', '十一', '十二')


def numeral_text(i: int, style: NumeralStyle, custom_texts: tuple[str, ...] = ()) -> str:
    fallback = str(i + 1)
    if style == NumeralStyle.CUSTOM:
        return (str(custom_texts[i]) if i < len(custom_texts) else '') or fallback
    elif style == NumeralStyle.ROMAN:
        return ROMAN_NUMERALS[i] if i < len(ROMAN_NUMERALS) else fallback
    elif style == NumeralStyle.CHINESE:
        return CHINESE_NUMERALS[i] if i < len(CHINESE_NUMERALS) else fallback
    elif style == NumeralStyle.NONE:
        return ''
    return fallback


# ----------------------4. Render Pipeline----------------------------


@dataclass(frozen=True)
class LinearGradientFill:
    start: XY
    end: XY
    colors: tuple[str, str]


@dataclass(frozen=True)
class RadialGradientFill:
    center: XY
    radius: float
    colors: tuple[str, str]


@dataclass(frozen=True)
class Rect:
    x: float
    y: float
    width: float
    height: float
    fill: object = None
    """color string or a gradient fill"""
    tag = 'rect'


@dataclass(frozen=True)
class Line:
    x1: float
    y1: float
    x2: float
    y2: float
    stroke: str
    stroke_width: float = 1
    tag = 'line'


@dataclass(frozen=True)
class Circle:
    cx: float
    cy: float
    r: float
    fill: str = None
    stroke: str = None
    stroke_width: float = 0
    dash: tuple[float, float] = None
    tag = 'circle'


@dataclass(frozen=True)
class Polygon:
    points: tuple[XY, ...]
    fill: str
    tag = 'polygon'


@dataclass(frozen=True)
class Text:
    """Text centered on (x, y), turned clockwise by rotation degrees around that point."""
    x: float
    y: float
    text: str
    font_size: float
    font_family: str
    fill: str
    rotation: float = 0
    tag = 'text'


@dataclass(frozen=True)
class Picture:
    x: float
    y: float
    width: float
    height: float
    source: str
    opacity: float = 1
    image: Image.Image = field(default=None, compare=False, repr=False)
    tag = 'image'


LOADING_LABEL = 'Loading image...'


@dataclass(frozen=True)
class RenderPipeline:
    """
    Maps a dial configuration to drawing primitives.
    Layers are emitted bottom to top; later primitives draw over earlier ones.
    """
    config: DialConfiguration
    image_state: 'ImageState' = None

    LAYERS = ('background', 'minor_scales', 'major_scales', 'numbers', 'center', 'outer_ring')

    @property
    def size(self) -> tuple[float, float]:
        canvas = self.config.canvas
        return as_size(canvas.width), as_size(canvas.height)

    @property
    def center(self) -> XY:
        w, h = self.size
        return w / 2, h / 2

    @property
    def radius(self) -> float:
        return dial_radius(*self.size)

    def layers(self) -> dict[str, list]:
        return {name: getattr(self, f'{name}_layer')() for name in self.LAYERS}

    def render(self) -> list:
        return list(chain.from_iterable(self.layers().values()))

    def background_layer(self) -> list:
        w, h = self.size
        fill = self.config.background.variant()
        if isinstance(fill, Gradient):
            return [Rect(0, 0, w, h, fill=self.gradient_fill(fill))]
        elif isinstance(fill, ImageFill):
            return self.image_background(fill)
        # pattern stamping is not rendered; its fallback color stands in
        return [Rect(0, 0, w, h, fill=fill.color)]

    def gradient_fill(self, gradient: Gradient):
        (cx, cy), (w, h) = self.center, self.size
        colors = gradient.stops(self.config.background.color)
        if gradient.kind == GradientKind.LINEAR:
            bearing = math.degrees(math.atan2(w, -h)) + finite(gradient.angle)
            half_diagonal = math.hypot(w, h) / 2
            return LinearGradientFill(polar_to_point(cx, cy, half_diagonal, bearing + DEG_SEMI),
                                      polar_to_point(cx, cy, half_diagonal, bearing), colors)
        return RadialGradientFill((cx, cy), min(w, h) / 2, colors)

    def image_background(self, fill: ImageFill) -> list:
        (w, h), state = self.size, self.image_state
        solid = Rect(0, 0, w, h, fill=self.config.background.color)
        if not fill.url:
            return [solid]
        if state is None or state.url != fill.url or state.status == ImageStatus.LOADING:
            cx, cy = self.center
            return [solid, Text(cx, cy, LOADING_LABEL, 20, Font.DEFAULT_FAMILY, Color.LOADING_LABEL.value)]
        if state.status == ImageStatus.ERROR or state.image is None:
            return [solid]
        return [Picture(0, 0, w, h, fill.url, min(1.0, as_size(fill.opacity)), image=state.image)]

    def minor_scales_layer(self) -> list:
        ms = self.config.minor_scales
        if not ms.visible:
            return []
        (cx, cy), r = self.center, self.radius
        inner_r = r - as_size(ms.length)
        result = []
        for angle in tick_angles(ms.count):  # independent of the major rotation offset
            x, y = polar_to_point(cx, cy, inner_r, angle)
            if ms.shape == MinorShape.DOT:
                result.append(Circle(x, y, as_size(ms.stroke_width), fill=ms.color))
            else:
                x0, y0 = polar_to_point(cx, cy, r, angle)
                result.append(Line(x0, y0, x, y, ms.color, as_size(ms.stroke_width)))
        return result

    def major_scales_layer(self) -> list:
        ms = self.config.major_scales
        if not ms.visible:
            return []
        return [self.major_tick(angle) for angle in tick_angles(ms.count, ms.rotation_offset)]

    def major_tick(self, angle: float):
        ms = self.config.major_scales
        (cx, cy), r = self.center, self.radius
        length = as_size(ms.length)
        x, y = polar_to_point(cx, cy, placement_radius(r, length, ms.placement), angle)
        if ms.shape == TickShape.TRIANGLE:
            return Polygon(regular_polygon(x, y, length / 2, 3, angle + DEG_RT), ms.color)
        elif ms.shape == TickShape.CIRCLE:
            return Circle(x, y, length / 2, fill=ms.color)
        elif ms.shape == TickShape.RECTANGLE:
            return Polygon(rotated_rect(x, y, length / 2, length, angle), ms.color)
        x0, y0 = polar_to_point(cx, cy, r, angle)
        return Line(x0, y0, x, y, ms.color, as_size(ms.stroke_width))

    def numbers_layer(self) -> list:
        nums, ms = self.config.numbers, self.config.major_scales
        if not nums.visible or nums.style == NumeralStyle.NONE:
            return []
        (cx, cy) = self.center
        num_r = self.radius * as_size(nums.radius_ratio)
        result = []
        for i, angle in enumerate(tick_angles(ms.count, ms.rotation_offset)):
            text = numeral_text(i, nums.style, nums.custom_texts)
            if not text:
                continue
            x, y = polar_to_point(cx, cy, num_r, angle)
            result.append(Text(x, y, text, as_size(nums.font_size), nums.font_family, nums.color,
                               numeral_rotation(angle, nums.rotation_mode)))
        return result

    def center_layer(self) -> list:
        c = self.config.center
        if not c.visible or c.style == CenterStyle.NONE:
            return []
        (cx, cy), size = self.center, as_size(c.size)
        result = [Circle(cx, cy, size, fill=c.color)]
        if c.style == CenterStyle.DECORATIVE:
            result.append(Circle(cx, cy, size * 0.4, fill=self.config.canvas.background_color))
        return result

    def outer_ring_layer(self) -> list:
        (cx, cy) = self.center
        return [Circle(cx, cy, self.radius + RING_GAP, stroke=Color.RING.value, stroke_width=2, dash=(5, 5))]


def render(config: DialConfiguration, image_state: 'ImageState' = None) -> list:
    return RenderPipeline(config, image_state).render()


# ----------------------5. Background Images----------------------------


class ImageStatus(Enum):
    LOADING, LOADED, ERROR = 'loading', 'loaded', 'error'


@dataclass(frozen=True)
class ImageState:
    url: str = ''
    status: ImageStatus = ImageStatus.LOADED
    image: Image.Image = field(default=None, compare=False, repr=False)
    error: str = None


RE_DATA_URI = re.compile(r'^data:([^;,]*)(;base64)?,(.*)$', re.DOTALL)
IMAGE_LOAD_ERRORS = (OSError, ValueError, ImageLoadFailure, Image.DecompressionBombError)


def read_image_source(url: str) -> Image.Image:
    """Opens a local path, file:// or http(s):// URL, or an image data: URI, fully decoded."""
    if matches := RE_DATA_URI.match(url):
        if not matches.group(1).startswith('image/'):
            raise ImageLoadFailure(f'Not an image data URI: {url[:40]}')
        payload = matches.group(3)
        data = base64.b64decode(payload, validate=True) if matches.group(2) else payload.encode()
    elif re.match(r'^https?://', url):
        with urllib.request.urlopen(url, timeout=30) as response:
            data = response.read(MAX_IMAGE_BYTES + 1)
    else:
        path = url[len('file://'):] if url.startswith('file://') else url
        if os.path.getsize(path) > MAX_IMAGE_BYTES:
            raise ImageLoadFailure(f'Image exceeds {MAX_IMAGE_BYTES} bytes: {url}')
        with open(path, 'rb') as image_file:
            data = image_file.read()
    if len(data) > MAX_IMAGE_BYTES:
        raise ImageLoadFailure(f'Image exceeds {MAX_IMAGE_BYTES} bytes: {url}')
    img = Image.open(io.BytesIO(data))
    img.load()
    return img


class ImageLoader:
    """
    Background image loading as loading -> loaded | error.
    Each request takes a new token; results carrying an older token are ignored.
    """

    def __init__(self, opener: Callable[[str], Image.Image] = read_image_source,
                 on_change: Callable[[ImageState], None] = None):
        self.opener = opener
        self.on_change = on_change
        self.token = 0
        self.state = ImageState()
        self.lock = threading.RLock()

    def request(self, url: str) -> int:
        with self.lock:
            self.token += 1
            self._set(ImageState(url, ImageStatus.LOADING) if url else ImageState())
            return self.token

    def deliver(self, token: int, image: Image.Image, url: str = None) -> bool:
        with self.lock:
            if token != self.token:
                return False
            self._set(ImageState(self.state.url if url is None else url, ImageStatus.LOADED, image))
            return True

    def fail(self, token: int, error, url: str = None) -> bool:
        with self.lock:
            if token != self.token:
                return False
            self._set(ImageState(self.state.url if url is None else url, ImageStatus.ERROR, error=str(error)))
            return True

    def load(self, url: str) -> ImageState:
        token = self.request(url)
        if url:
            try:
                image = self.opener(url)
            except IMAGE_LOAD_ERRORS as e:
                self.fail(token, e, url)
            else:
                self.deliver(token, image, url)
        return self.state

    def load_async(self, url: str, executor: Executor) -> Future:
        token = self.request(url)
        if not url:
            return None
        future = executor.submit(self.opener, url)
        future.add_done_callback(lambda f: self._settle(token, url, f))
        return future

    def _settle(self, token: int, url: str, future: Future):
        # every failure settles as ERROR; nothing may escape the executor thread
        error = future.exception()
        if error is None:
            self.deliver(token, future.result(), url)
        else:
            self.fail(token, error, url)

    def track(self, config: DialConfiguration) -> ImageState:
        """Loads the configured background image unless it is already the current request."""
        bg = config.background
        if bg.kind == BgKind.IMAGE and bg.image.url != self.state.url:
            self.load(bg.image.url)
        return self.state

    def _set(self, state: ImageState):
        self.state = state
        if self.on_change:
            self.on_change(state)


# ----------------------6. Output Backends----------------------------


class Out:
    def __init__(self, r):
        self.r = r

    @classmethod
    def for_format(cls, out_format: OutFormat, canvas: Canvas, dpi: float = REFERENCE_DPI):
        if out_format == OutFormat.PNG:
            return RasterOut.for_canvas(canvas, dpi)
        return SVGOut.for_canvas(canvas)

    def draw(self, prim):
        getattr(self, f'draw_{prim.tag}')(prim)

    def draw_all(self, prims):
        for prim in prims:
            self.draw(prim)

    def draw_rect(self, p: Rect): pass
    def draw_line(self, p: Line): pass
    def draw_circle(self, p: Circle): pass
    def draw_polygon(self, p: Polygon): pass
    def draw_text(self, p: Text): pass
    def draw_image(self, p: Picture): pass
    def to_bytes(self, dpi: int) -> bytes: raise NotImplementedError


class RasterOut(Out):
    r: ImageDraw.ImageDraw = None

    def __init__(self, img: Image.Image, scale: float = 1):
        super().__init__(ImageDraw.Draw(img))
        self.img = img
        self.scale = scale

    @classmethod
    def for_canvas(cls, canvas: Canvas, dpi: float = REFERENCE_DPI):
        w, h = raster_size(canvas, dpi)
        if w < 1 or h < 1:
            raise ExportSurfaceUnavailable(f'No raster surface for a {canvas.width}x{canvas.height} canvas')
        bg = (0, 0, 0, 0) if canvas.transparent else Color.to_pil(canvas.background_color)
        try:
            img = Image.new('RGBA', (w, h), bg)
        except (MemoryError, ValueError) as e:
            raise ExportSurfaceUnavailable(f'Cannot allocate a {w}x{h} raster surface') from e
        return cls(img, finite(dpi) / REFERENCE_DPI)

    def xy(self, x: float, y: float) -> XY:
        return x * self.scale, y * self.scale

    def px(self, v: float) -> int:
        return max(1, round(v * self.scale))

    def composite_at(self, tile: Image.Image, x: float, y: float):
        """alpha_composite clipped to the surface, allowing negative offsets."""
        x, y = round(x), round(y)
        left, top = max(0, -x), max(0, -y)
        right, bottom = min(tile.width, self.img.width - x), min(tile.height, self.img.height - y)
        if left >= right or top >= bottom:
            return
        self.img.alpha_composite(tile.crop((left, top, right, bottom)), (x + left, y + top))

    def draw_rect(self, p: Rect):
        (x0, y0), (x1, y1) = self.xy(p.x, p.y), self.xy(p.x + p.width, p.y + p.height)
        if isinstance(p.fill, (LinearGradientFill, RadialGradientFill)):
            self.fill_gradient(p.fill, round(x0), round(y0), round(x1 - x0), round(y1 - y0))
        elif p.fill:
            self.r.rectangle((x0, y0, x1, y1), fill=Color.to_pil(p.fill))

    def fill_gradient(self, fill, x0: int, y0: int, w: int, h: int):
        if w < 1 or h < 1:
            return
        if isinstance(fill, LinearGradientFill):
            (sx, sy), (ex, ey) = self.xy(*fill.start), self.xy(*fill.end)
            length = max(1, round(math.hypot(ex - sx, ey - sy)))
            # gradient runs 0 -> 255 downwards; turn it to run from start to end
            band = Image.linear_gradient('L').resize((length, length))
            band = band.rotate(math.degrees(math.atan2(ex - sx, ey - sy)), resample=Image.Resampling.BICUBIC)
            mask = Image.new('L', (w, h), 0)
            mask.paste(band, (round((sx + ex - length) / 2) - x0, round((sy + ey - length) / 2) - y0))
        else:
            (cx, cy), r = self.xy(*fill.center), max(1, round(fill.radius * self.scale))
            mask = Image.new('L', (w, h), 255)
            mask.paste(Image.radial_gradient('L').resize((2 * r, 2 * r)), (round(cx) - r - x0, round(cy) - r - y0))
        c0, c1 = fill.colors
        tile = Image.composite(Image.new('RGBA', (w, h), Color.to_pil(c1)),
                               Image.new('RGBA', (w, h), Color.to_pil(c0)), mask)
        self.composite_at(tile, x0, y0)

    def draw_line(self, p: Line):
        self.r.line((self.xy(p.x1, p.y1), self.xy(p.x2, p.y2)), fill=Color.to_pil(p.stroke), width=self.px(p.stroke_width))

    def draw_circle(self, p: Circle):
        (cx, cy), r = self.xy(p.cx, p.cy), p.r * self.scale
        if r <= 0:
            return
        bbox = (cx - r, cy - r, cx + r, cy + r)
        if p.fill:
            self.r.ellipse(bbox, fill=Color.to_pil(p.fill))
        if p.stroke and p.stroke_width > 0:
            col, width = Color.to_pil(p.stroke), self.px(p.stroke_width)
            on, off = (d * self.scale for d in p.dash) if p.dash else (0, 0)
            circumference = 2 * math.pi * r
            if on <= 0 or off <= 0 or circumference < on + off:
                self.r.ellipse(bbox, outline=col, width=width)
                return
            step = DEG_FULL * (on + off) / circumference
            arc = DEG_FULL * on / circumference
            for i in range(int(circumference // (on + off))):
                self.r.arc(bbox, i * step, i * step + arc, fill=col, width=width)

    def draw_polygon(self, p: Polygon):
        self.r.polygon([self.xy(x, y) for (x, y) in p.points], fill=Color.to_pil(p.fill))

    def draw_text(self, p: Text):
        font = Font.font_for(p.font_family, p.font_size, self.scale)
        (x, y), col = self.xy(p.x, p.y), Color.to_pil(p.fill)
        if not p.rotation:
            self.r.text((x, y), p.text, font=font, fill=col, anchor='mm')
            return
        (x1, y1, x2, y2) = font.getbbox(p.text, anchor='mm')
        side = math.ceil(2 * math.hypot(max(abs(x1), abs(x2)), max(abs(y1), abs(y2)))) + 2
        tile = Image.new('RGBA', (side, side), (0, 0, 0, 0))
        ImageDraw.Draw(tile).text((side / 2, side / 2), p.text, font=font, fill=col, anchor='mm')
        tile = tile.rotate(-p.rotation, resample=Image.Resampling.BICUBIC)  # PIL turns counterclockwise
        self.composite_at(tile, x - side / 2, y - side / 2)

    def draw_image(self, p: Picture):
        if p.image is None:
            return
        (x0, y0), (x1, y1) = self.xy(p.x, p.y), self.xy(p.x + p.width, p.y + p.height)
        w, h = round(x1 - x0), round(y1 - y0)
        if w < 1 or h < 1:
            return
        tile = p.image.convert('RGBA').resize((w, h))
        if p.opacity < 1:
            tile.putalpha(tile.getchannel('A').point(lambda a: round(a * p.opacity)))
        self.composite_at(tile, x0, y0)

    def to_bytes(self, dpi: int) -> bytes:
        img = self.img if self.img.getextrema()[3][0] < 255 else self.img.convert('RGB')
        buf = io.BytesIO()
        img.save(buf, 'PNG', dpi=(dpi, dpi))
        return buf.getvalue()


class SVGOut(Out):
    r: svg.Drawing = None

    @classmethod
    def for_canvas(cls, canvas: Canvas):
        w, h = as_size(canvas.width), as_size(canvas.height)
        if w <= 0 or h <= 0:
            raise ExportSurfaceUnavailable(f'No vector surface for a {canvas.width}x{canvas.height} canvas')
        drawing = svg.Drawing(canvas.width, canvas.height, id_prefix='def_')
        if not canvas.transparent:
            drawing.append(svg.Rectangle(0, 0, w, h, fill=canvas.background_color))
        return cls(drawing)

    @staticmethod
    def attrs(**kwargs) -> dict:
        return {k: v for k, v in kwargs.items() if v is not None}

    @staticmethod
    def paint(fill):
        if isinstance(fill, LinearGradientFill):
            (sx, sy), (ex, ey) = fill.start, fill.end
            gradient = svg.LinearGradient(sx, sy, ex, ey)
        elif isinstance(fill, RadialGradientFill):
            (cx, cy) = fill.center
            gradient = svg.RadialGradient(cx, cy, fill.radius)
        else:
            return fill or 'none'
        gradient.add_stop(0, fill.colors[0])
        gradient.add_stop(1, fill.colors[1])
        return gradient

    def draw_rect(self, p: Rect):
        self.r.append(svg.Rectangle(p.x, p.y, p.width, p.height, fill=self.paint(p.fill)))

    def draw_line(self, p: Line):
        self.r.append(svg.Line(p.x1, p.y1, p.x2, p.y2, stroke=p.stroke, stroke_width=p.stroke_width))

    def draw_circle(self, p: Circle):
        dash = ' '.join(str(d) for d in p.dash) if p.dash else None
        self.r.append(svg.Circle(p.cx, p.cy, p.r, fill=self.paint(p.fill), **self.attrs(
            stroke=p.stroke, stroke_width=p.stroke_width if p.stroke else None, stroke_dasharray=dash)))

    def draw_polygon(self, p: Polygon):
        self.r.append(svg.Lines(*chain.from_iterable(p.points), close=True, fill=p.fill))

    def draw_text(self, p: Text):
        transform = f'rotate({p.rotation},{p.x},{p.y})' if p.rotation else None
        self.r.append(svg.Text(p.text, p.font_size, p.x, p.y, fill=p.fill, **self.attrs(
            font_family=p.font_family, text_anchor='middle', dominant_baseline='central', transform=transform)))

    def draw_image(self, p: Picture):
        if p.image is None:
            self.r.append(svg.Image(p.x, p.y, p.width, p.height, path=p.source, opacity=p.opacity))
            return
        buf = io.BytesIO()
        p.image.convert('RGBA').save(buf, 'PNG')
        self.r.append(svg.Image(p.x, p.y, p.width, p.height, data=buf.getvalue(), embed=True,
                                mime_type='image/png', preserveAspectRatio='none', opacity=p.opacity))

    def to_bytes(self, dpi: int = None) -> bytes:
        return self.r.as_svg().encode('utf-8')


# ----------------------7. Export----------------------------


def raster_size(canvas: Canvas, dpi: float) -> WH:
    """Pixel size of the canvas printed at dpi."""
    scale = finite(dpi) / REFERENCE_DPI
    return round(as_size(canvas.width) * scale), round(as_size(canvas.height) * scale)


def filename_for(out_format: OutFormat, now: datetime = None) -> str:
    now = now or datetime.now(timezone.utc)
    timestamp = now.strftime('%Y-%m-%dT%H:%M:%S').replace(':', '-')
    return f'clock-face-{timestamp}.{out_format.value}'


def write_atomic(path: str, data: bytes):
    """Either the whole file appears at path or nothing does."""
    dir_path = os.path.dirname(os.path.abspath(path))
    fd, tmp = tempfile.mkstemp(prefix='.clock-face.', dir=dir_path)
    try:
        with os.fdopen(fd, 'wb') as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    finally:
        if os.path.exists(tmp):
            os.remove(tmp)


class Exporter:
    """Serializes the current primitive list; one export at a time."""

    def __init__(self, store: ConfigStore, loader: ImageLoader = None):
        self.store = store
        self.loader = loader
        self.lock = threading.Lock()

    def primitives(self) -> list:
        return render(self.store.get(), self.loader.state if self.loader else None)

    @property
    def busy(self) -> bool:
        return self.lock.locked()

    @contextmanager
    def exporting(self):
        if not self.lock.acquire(blocking=False):
            raise ExportBusy('An export is already in progress')
        try:
            yield
        finally:
            self.lock.release()

    def export(self, out_format: OutFormat, dpi: int = None) -> bytes:
        canvas = self.store.get().canvas
        dpi = canvas.dpi if dpi is None else dpi
        if out_format == OutFormat.PNG and finite(dpi) <= 0:
            raise ExportSurfaceUnavailable(f'DPI must be positive, got {dpi!r}')
        with self.exporting():
            out = Out.for_format(out_format, canvas, finite(dpi))
            try:
                out.draw_all(self.primitives())
                return out.to_bytes(round(finite(dpi)))
            except (OSError, ValueError, TypeError) as e:
                raise ExportSerializationFailure(f'{out_format.value.upper()} export failed: {e}') from e

    def export_raster(self, dpi: int = None) -> bytes:
        """PNG scaled by dpi/72; dpi defaults to the canvas setting."""
        return self.export(OutFormat.PNG, dpi)

    def export_vector(self) -> bytes:
        """SVG at the logical canvas size."""
        return self.export(OutFormat.SVG)

    def save(self, out_format: OutFormat, dir_path: str = '.', dpi: int = None, now: datetime = None) -> str:
        data = self.export(out_format, dpi)
        output_full_path = os.path.abspath(os.path.join(dir_path, filename_for(out_format, now)))
        write_atomic(output_full_path, data)
        return output_full_path


# ----------------------8. Presets----------------------------


class Presets:
    example_dir_path = os.path.join(os.path.dirname(os.path.realpath(__file__)), 'examples')
    DEFAULT = 'Default'

    @classmethod
    def names(cls):
        yield cls.DEFAULT
        for fn in sorted(os.listdir(cls.example_dir_path)):
            if match := re.match(r'Preset-(.*)\.toml$', fn):
                yield match.group(1)

    @classmethod
    def load(cls, preset_name: str) -> dict:
        """A partial configuration, from a preset name or a TOML file path."""
        if preset_name == cls.DEFAULT:
            return {}
        if os.path.exists(preset_name):
            return toml.load(preset_name)
        return toml.load(os.path.join(cls.example_dir_path, f'Preset-{preset_name}.toml'))

    @classmethod
    def config_for(cls, preset_name: str) -> DialConfiguration:
        return merge_config(DEFAULT_CONFIG, cls.load(preset_name))


# ----------------------9. Commands------------------------------------------


def parse_assignment(assignment: str) -> dict:
    """'major_scales.count=24' or 'background.gradient.angle=45' as a partial configuration."""
    import argparse
    matches = re.match(r'^\s*(\w+)\.(\w+)(?:\.(\w+))?\s*=\s*(.*)$', assignment)
    if not matches:
        raise argparse.ArgumentTypeError(f'Expected section.field=value, got: {assignment}')
    section, key, sub_key, raw = matches.groups()
    try:
        value = toml.loads(f'v = {raw}')['v']
    except toml.TomlDecodeError:
        value = raw
    return {section: {key: {sub_key: value} if sub_key else value}}


def save_image(exporter: Exporter, out_format: OutFormat, dir_path: str = '.', dpi: int = None):
    output_full_path = exporter.save(out_format, dir_path, dpi)
    print(f'Result saved to: file://{output_full_path}')
    return output_full_path


def main():
    """CLI processor for rendering a clock face preset."""
    import argparse
    args_parser = argparse.ArgumentParser()
    args_parser.add_argument('--preset',
                             choices=list(Presets.names()),
                             default=Presets.DEFAULT,
                             help='Which clock face preset')
    args_parser.add_argument('--format',
                             default=OutFormat.PNG.value,
                             choices=[f.value for f in OutFormat],
                             help='Output format (PNG for printing, SVG for vector tooling)')
    args_parser.add_argument('--dpi',
                             type=int,
                             help='Raster resolution (canvas DPI by default)')
    args_parser.add_argument('--set',
                             type=parse_assignment,
                             action='append',
                             default=[],
                             metavar='SECTION.FIELD=VALUE',
                             help='Override a configuration field, e.g. numbers.style=roman')
    args_parser.add_argument('--output-dir',
                             default='.',
                             help='Directory to write the result to')
    cli_args = args_parser.parse_args()
    out_format: OutFormat = next(f for f in OutFormat if f.value == cli_args.format)

    store = ConfigStore()
    store.load_preset_named(cli_args.preset)
    for patch in cli_args.set:
        store.load_preset(patch)

    start_time = time.process_time()
    loader = ImageLoader()
    image_state = loader.track(store.get())
    if image_state.status == ImageStatus.ERROR:
        print(f'Background image unavailable, using solid fill: {image_state.error}')
    os.makedirs(cli_args.output_dir, exist_ok=True)
    save_image(Exporter(store, loader), out_format, cli_args.output_dir, cli_args.dpi)
    print(f'Program finished at: {round(time.process_time() - start_time, 3)} seconds')


if __name__ == '__main__':
    main()
