#!/usr/bin/env python3

"""
Sketch Renderer: diagram documents (Excalidraw JSON) to SVG or PNG,
drawn exactly or in a hand-drawn style.

Table of Contents
   1. Setup
   2. Element Model
   3. Canvas Bounds
   4. Geometry Synthesis
   5. Sketchy Strokes and Fills
   6. Output Backends
   7. Rendering
   8. Commands
"""

# ----------------------1. Setup----------------------------

import hashlib
import json
import logging
import math
import os
import random
import re
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from functools import cache
from io import BytesIO
from itertools import chain
from typing import Union

import toml
from PIL import Image, ImageColor, ImageDraw, ImageFont
import drawsvg as svg

log = logging.getLogger(__name__)

# Angular constants:
TAU = math.tau
PI = math.pi
PI_HALF = PI / 2

FF = 255
RGBA = tuple[int, int, int, int]
XY = tuple[float, float]
WH = tuple[int, int]

SOURCE_DPI = 96
"""Document units are CSS pixels."""
MAX_SURFACE_PIXELS = 1 << 28
MAX_JITTER_FRACTION = 0.05
"""Sketch jitter never exceeds this fraction of a primitive's size."""
SECOND_PASS_OPACITY = 0.85
LAYER_MARGIN = 48
"""Extra room (document units) around an element's extent when rasterizing it."""
MAX_BOW = 4
"""Bowing never exceeds this multiple of a segment's jitter offset."""
JITTER_REACH = 8
"""Sketch strokes stay within this multiple of the jitter amplitude of the exact outline."""


def rotate_point(p: XY, center: XY, angle: float) -> XY:
    """Rotates p about center by angle radians (clockwise on a y-down canvas)."""
    if not angle:
        return p
    (px, py), (cx, cy) = p, center
    ca, sa = math.cos(angle), math.sin(angle)
    dx, dy = px - cx, py - cy
    return cx + dx * ca - dy * sa, cy + dx * sa + dy * ca


class Color(Enum):
    WHITE, BLACK = (FF, FF, FF, FF), (0, 0, 0, FF)
    TRANSPARENT = (0, 0, 0, 0)
    INK = (0x1e, 0x1e, 0x1e, FF)
    """Excalidraw default stroke"""

    @staticmethod
    @cache
    def parse(color: str) -> RGBA:
        """Lenient parse for element colors: blank is transparent, garbage is black."""
        if not color or not color.strip():
            return Color.TRANSPARENT.value
        try:
            return Color.parse_strict(color)
        except ValueError:
            return Color.BLACK.value

    @staticmethod
    def parse_strict(color: str) -> RGBA:
        """Accepts #RRGGBB, #RRGGBBAA (with or without #), CSS names and 'transparent'."""
        color = color.strip()
        if color.lower() in ('transparent', 'none'):
            return Color.TRANSPARENT.value
        if re.fullmatch(r'[0-9a-fA-F]{6}([0-9a-fA-F]{2})?', color):
            color = '#' + color
        rgba = ImageColor.getrgb(color)
        return rgba if len(rgba) == 4 else (*rgba, FF)

    @staticmethod
    def to_hex(col: RGBA) -> str:
        return '#{:02x}{:02x}{:02x}'.format(*col[:3])

    @classmethod
    def to_css(cls, col: RGBA) -> str:
        if col[3] == FF:
            return cls.to_hex(col)
        return f'rgba({col[0]},{col[1]},{col[2]},{round(col[3] / FF, 4)})'

    @staticmethod
    def with_opacity(col: RGBA, opacity: float) -> RGBA:
        return col[0], col[1], col[2], round(col[3] * min(max(opacity, 0.0), 1.0))


class ElementKind(Enum):
    RECTANGLE, DIAMOND, ELLIPSE = 'rectangle', 'diamond', 'ellipse'
    LINE, ARROW, FREEDRAW = 'line', 'arrow', 'freedraw'
    TEXT = 'text'
    UNSUPPORTED = None

    @classmethod
    def named(cls, type_name: str):
        return next((k for k in cls if k.value == type_name), cls.UNSUPPORTED)


BOX_KINDS = {ElementKind.RECTANGLE, ElementKind.DIAMOND, ElementKind.ELLIPSE, ElementKind.TEXT}


class FillStyle(Enum):
    SOLID, HACHURE, CROSS_HATCH = 'solid', 'hachure', 'cross-hatch'

    @classmethod
    def named(cls, name: str):
        # zigzag and other patterns draw as hachure
        return next((f for f in cls if f.value == name), cls.HACHURE)


class StrokeStyle(Enum):
    SOLID, DASHED, DOTTED = 'solid', 'dashed', 'dotted'

    @classmethod
    def named(cls, name: str):
        return next((s for s in cls if s.value == name), cls.SOLID)


class Arrowhead(Enum):
    ARROW, BAR = 'arrow', 'bar'
    DOT, CIRCLE, CIRCLE_OUTLINE = 'dot', 'circle', 'circle_outline'
    TRIANGLE, TRIANGLE_OUTLINE = 'triangle', 'triangle_outline'
    DIAMOND, DIAMOND_OUTLINE = 'diamond', 'diamond_outline'
    CROWFOOT_ONE, CROWFOOT_MANY, CROWFOOT_ONE_OR_MANY = 'crowfoot_one', 'crowfoot_many', 'crowfoot_one_or_many'

    @classmethod
    def named(cls, name: str):
        if not name:
            return None
        # unknown kinds draw as the plain open arrow
        return next((a for a in cls if a.value == name), cls.ARROW)

    @property
    def size(self) -> float:
        """Base length in document units, before stroke width scaling"""
        if self == Arrowhead.ARROW:
            return 25
        if self in (Arrowhead.DIAMOND, Arrowhead.DIAMOND_OUTLINE):
            return 12
        if self in (Arrowhead.CROWFOOT_ONE, Arrowhead.CROWFOOT_MANY, Arrowhead.CROWFOOT_ONE_OR_MANY):
            return 20
        return 15

    @property
    def angle(self) -> float:
        """Half-angle of the wedge in degrees"""
        if self == Arrowhead.BAR:
            return 90
        return 20 if self == Arrowhead.ARROW else 25

    @property
    def is_outline(self):
        return self.value.endswith('_outline')


class TextAlign(Enum):
    LEFT, CENTER, RIGHT = 'left', 'center', 'right'

    @classmethod
    def named(cls, name: str):
        return next((a for a in cls if a.value == name), cls.LEFT)


class End(Enum):
    """Which end of a line an arrowhead sits on"""
    START, END = 'start', 'end'


class OutFormat(Enum):
    PNG, SVG = 'png', 'svg'

    @classmethod
    def from_path(cls, path: str):
        return cls.SVG if os.path.splitext(path)[1].lower() == '.svg' else cls.PNG


class Font:
    """Element fontFamily ids to (family name, generic CSS fallback)"""
    Family = tuple[str, str]
    Excalifont: Family = ('Excalifont', 'cursive')
    LiberationSans: Family = ('Liberation Sans', 'sans-serif')
    CascadiaCode: Family = ('Cascadia Code', 'monospace')

    by_id = {0: Excalifont, 1: LiberationSans, 2: CascadiaCode}

    @classmethod
    def family_for(cls, family_id: int) -> Family:
        return cls.by_id.get(family_id, cls.Excalifont)

    @classmethod
    def css_family(cls, family_id: int) -> str:
        name, generic = cls.family_for(family_id)
        return f"'{name}', {generic}"

    @classmethod
    @cache
    def get_truetype_font(cls, candidates: tuple[str, ...], fs: int):
        for candidate in candidates:
            try:
                return ImageFont.truetype(candidate, fs)
            except OSError:
                continue
        log.info('No font file found among %s, using the default font', candidates)
        return ImageFont.load_default(size=fs)

    @classmethod
    def font_for(cls, family_id: int, font_size: float, config: 'RenderConfig'):
        name, _ = cls.family_for(family_id)
        files = config.font_files.get(name, ())
        module_dir = os.path.dirname(os.path.realpath(__file__))
        candidates = [os.path.join(font_dir if os.path.isabs(font_dir) else os.path.join(module_dir, font_dir), f)
                      for font_dir in config.font_dirs for f in files]
        return cls.get_truetype_font(tuple(candidates) + tuple(files), max(1, round(font_size)))


DEFAULT_FONT_FILES = {
    'Excalifont': ('Excalifont-Regular.ttf', 'Virgil.ttf', 'DejaVuSans.ttf'),
    'Liberation Sans': ('LiberationSans-Regular.ttf', 'DejaVuSans.ttf'),
    'Cascadia Code': ('CascadiaCode.ttf', 'DejaVuSansMono.ttf'),
}


@dataclass(frozen=True)
class RenderConfig:
    padding: float = 40
    """canvas margin around the drawing, on every side"""
    empty_canvas_wh: tuple[int, int] = (800, 600)
    """canvas size when nothing is visible"""
    seed_base: int = 0
    """mixed with each element id to seed its sketch"""
    sketchy: bool = True
    """hand-drawn strokes for elements with roughness > 0"""
    background: str = '#ffffff'
    hachure_angle: float = -41
    """degrees"""
    hachure_gap: float = 8
    fill_weight_ratio: float = 0.5
    """hatch line width relative to the stroke width"""
    curve_step_count: int = 9
    corner_steps: int = 8
    supersample: int = 2
    dpi: int = None
    """output DPI for PNG; None keeps document units as pixels"""
    quality: int = 75
    """PNG compression effort, 0-100"""
    legacy: bool = False
    """rasterize PNG output from the SVG document"""
    font_dirs: tuple[str, ...] = ('fonts',)
    font_files: dict[str, tuple[str, ...]] = field(default_factory=lambda: dict(DEFAULT_FONT_FILES), hash=False)

    def __post_init__(self):
        if not 0 <= self.quality <= 100:
            raise ValueError(f'quality must be within 0-100: {self.quality}')
        if self.supersample < 1:
            raise ValueError(f'supersample must be at least 1: {self.supersample}')
        if self.hachure_gap <= 0:
            raise ValueError(f'hachure_gap must be positive: {self.hachure_gap}')
        if self.padding < 0:
            raise ValueError(f'padding must not be negative: {self.padding}')
        if self.dpi is not None and self.dpi <= 0:
            raise ValueError(f'dpi must be positive: {self.dpi}')
        if min(self.empty_canvas_wh) < 1:
            raise ValueError(f'empty_canvas_wh must be at least 1x1: {self.empty_canvas_wh}')
        self.background_rgba()

    @classmethod
    def from_dict(cls, config_def: dict):
        known = set(cls.__dataclass_fields__)
        unknown = set(config_def) - known
        if unknown:
            raise ValueError(f'Unknown render config keys: {", ".join(sorted(unknown))}')
        config_def = dict(config_def)
        for key in ('empty_canvas_wh', 'font_dirs'):
            if key in config_def:
                config_def[key] = tuple(config_def[key])
        if 'font_files' in config_def:
            config_def['font_files'] = {**DEFAULT_FONT_FILES,
                                        **{k: tuple(v) for k, v in config_def['font_files'].items()}}
        return cls(**config_def)

    @classmethod
    def from_toml_file(cls, toml_filename: str):
        return cls.from_dict(toml.load(toml_filename))

    example_dir_path = os.path.join(os.path.dirname(os.path.realpath(__file__)), 'examples')

    @classmethod
    def from_example(cls, example_name: str):
        return cls.from_toml_file(os.path.join(cls.example_dir_path, f'Render-{example_name}.toml'))

    @classmethod
    def load(cls, config_name: str):
        return cls.from_toml_file(config_name) if os.path.exists(config_name) else cls.from_example(config_name)

    @classmethod
    def example_names(cls):
        for fn in sorted(os.listdir(cls.example_dir_path)):
            if match := re.match(r'Render-(.*)\.toml$', fn):
                yield match.group(1)

    @property
    def dpi_scale(self) -> float:
        return self.dpi / SOURCE_DPI if self.dpi else 1.0

    def background_rgba(self):
        """The requested background, or None when fully transparent."""
        col = Color.parse_strict(self.background) if self.background else Color.TRANSPARENT.value
        return col if col[3] else None

    def outline_fill(self) -> RGBA:
        """Fill for outline-style arrowheads: the canvas color where there is one."""
        bg = self.background_rgba()
        return (*bg[:3], FF) if bg else Color.WHITE.value


class DocumentError(ValueError):
    """The document is structurally invalid and cannot be rendered."""


class RenderError(RuntimeError):
    """A whole render failed: bad surface, or a backend reported an error."""

    def __init__(self, operation: str, message: str, element_id: str = None, kind: str = None):
        super().__init__(message)
        self.operation = operation
        self.message = message
        self.element_id = element_id
        self.kind = kind

    def __str__(self):
        context = ', '.join(f'{k}={v}' for k, v in (('element', self.element_id), ('kind', self.kind)) if v)
        return f'{self.operation} failed: {self.message}' + (f' ({context})' if context else '')


# ----------------------2. Element Model----------------------------


@dataclass(frozen=True)
class Roundness:
    type: int = 3
    """1 legacy, 2 proportional, 3 adaptive"""
    value: float = None

    LEGACY, PROPORTIONAL, ADAPTIVE = 1, 2, 3
    PROPORTIONAL_RADIUS = 0.25
    ADAPTIVE_RADIUS = 32

    def corner_radius(self, x: float) -> float:
        """Corner radius for a shape whose smaller side is x."""
        if self.type in (self.LEGACY, self.PROPORTIONAL):
            return x * self.PROPORTIONAL_RADIUS
        if self.type == self.ADAPTIVE:
            fixed = self.value if self.value is not None else self.ADAPTIVE_RADIUS
            if x <= fixed / self.PROPORTIONAL_RADIUS:
                return x * self.PROPORTIONAL_RADIUS
            return fixed
        return 0


@dataclass(frozen=True)
class Element:
    id: str
    kind: ElementKind
    x: float = 0
    y: float = 0
    width: float = 0
    height: float = 0
    angle: float = 0
    """rotation about the element center, in radians"""
    points: tuple[XY, ...] = ()
    """relative to (x, y); lines, arrows and free-draw only"""
    stroke_color: str = Color.to_hex(Color.INK.value)
    background_color: str = 'transparent'
    fill_style: FillStyle = FillStyle.HACHURE
    stroke_width: float = 1
    stroke_style: StrokeStyle = StrokeStyle.SOLID
    roughness: float = 1
    """0 draws exactly, higher values wobble more"""
    opacity: float = 100
    roundness: Roundness = None
    start_arrowhead: Arrowhead = None
    end_arrowhead: Arrowhead = None
    elbowed: bool = False
    text: str = None
    font_size: float = 20
    font_family: int = 1
    text_align: TextAlign = TextAlign.LEFT
    line_height: float = 1.25
    """multiple of font_size"""
    is_deleted: bool = False
    type_name: str = None
    """the raw type, kept for unsupported kinds"""
    extra: dict = field(default_factory=dict, compare=False, hash=False)
    """attributes this renderer doesn't interpret"""

    known_keys = frozenset({
        'id', 'type', 'x', 'y', 'width', 'height', 'angle', 'points', 'strokeColor', 'backgroundColor',
        'fillStyle', 'strokeWidth', 'strokeStyle', 'roughness', 'opacity', 'roundness', 'rounded',
        'strokeSharpness', 'startArrowhead', 'endArrowhead', 'startArrowType', 'endArrowType', 'elbowed',
        'text', 'originalText', 'fontSize', 'fontFamily', 'textAlign', 'lineHeight', 'isDeleted'})

    def __post_init__(self):
        object.__setattr__(self, 'opacity', min(max(self.opacity, 0), 100))

    @classmethod
    def from_dict(cls, element_def: dict, index: int = 0):
        if not isinstance(element_def, dict):
            raise DocumentError(f'Element {index} is not an object')
        element_id = str(element_def.get('id') or f'element-{index}')

        def number(key, default):
            value = element_def.get(key)
            if value is None:
                return default
            if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
                raise DocumentError(f'Element {element_id}: {key} must be a finite number, got {value!r}')
            return value

        width, height = number('width', 0), number('height', 0)
        if width < 0 or height < 0:
            raise DocumentError(f'Element {element_id}: negative size {width}x{height}')
        points = []
        for p in element_def.get('points') or ():
            if (not isinstance(p, (list, tuple)) or len(p) < 2
                    or not all(isinstance(v, (int, float)) and math.isfinite(v) for v in p[:2])):
                raise DocumentError(f'Element {element_id}: malformed point {p!r}')
            points.append((float(p[0]), float(p[1])))
        type_name = element_def.get('type')
        text = element_def.get('text')
        if text is None:
            text = element_def.get('originalText')
        if text is not None and not isinstance(text, str):
            raise DocumentError(f'Element {element_id}: text must be a string, got {text!r}')
        font_family = element_def.get('fontFamily', 1)
        if font_family is not None and (isinstance(font_family, bool) or not isinstance(font_family, int)):
            raise DocumentError(f'Element {element_id}: fontFamily must be an integer id, got {font_family!r}')
        return cls(
            id=element_id, kind=ElementKind.named(type_name), type_name=type_name,
            x=number('x', 0), y=number('y', 0), width=width, height=height, angle=number('angle', 0),
            points=tuple(points),
            stroke_color=str(element_def.get('strokeColor') or cls.stroke_color),
            background_color=str(element_def.get('backgroundColor') or cls.background_color),
            fill_style=FillStyle.named(element_def.get('fillStyle', FillStyle.HACHURE.value)),
            stroke_width=number('strokeWidth', 1),
            stroke_style=StrokeStyle.named(element_def.get('strokeStyle')),
            roughness=number('roughness', 1), opacity=number('opacity', 100),
            roundness=cls.roundness_from(element_def, element_id),
            start_arrowhead=Arrowhead.named(element_def.get('startArrowhead') or element_def.get('startArrowType')),
            end_arrowhead=Arrowhead.named(element_def.get('endArrowhead') or element_def.get('endArrowType')),
            elbowed=bool(element_def.get('elbowed')),
            text=text, font_size=number('fontSize', 20), font_family=font_family,
            text_align=TextAlign.named(element_def.get('textAlign')),
            line_height=number('lineHeight', 1.25),
            is_deleted=bool(element_def.get('isDeleted')),
            extra={k: v for k, v in element_def.items() if k not in cls.known_keys})

    @staticmethod
    def roundness_from(element_def: dict, element_id: str = None):
        roundness = element_def.get('roundness')
        if isinstance(roundness, dict):
            rounding_type, value = roundness.get('type', Roundness.ADAPTIVE), roundness.get('value')
            for key, v in (('type', rounding_type), ('value', value)):
                if v is not None and (isinstance(v, bool) or not isinstance(v, (int, float)) or not math.isfinite(v)):
                    raise DocumentError(f'Element {element_id}: roundness {key} must be a number, got {v!r}')
            return Roundness(Roundness.ADAPTIVE if rounding_type is None else rounding_type, value)
        if element_def.get('rounded') or element_def.get('strokeSharpness') == 'round':
            return Roundness()
        return None

    @property
    def center(self) -> XY:
        return self.x + self.width / 2, self.y + self.height / 2

    @property
    def is_point_based(self):
        return bool(self.points) and self.kind not in BOX_KINDS

    def absolute_points(self) -> list[XY]:
        """Points in document coordinates, rotation applied."""
        c = self.center
        return [rotate_point((self.x + px, self.y + py), c, self.angle) for (px, py) in self.points]

    def corners(self) -> list[XY]:
        x, y, w, h = self.x, self.y, self.width, self.height
        return [rotate_point(p, self.center, self.angle) for p in ((x, y), (x + w, y), (x + w, y + h), (x, y + h))]

    def extent_points(self) -> list[XY]:
        return self.absolute_points() if self.is_point_based else self.corners()


@dataclass(frozen=True)
class Document:
    elements: tuple[Element, ...] = ()
    """every element in z-order, deleted ones included"""
    app_state: dict = field(default_factory=dict, compare=False, hash=False)

    @classmethod
    def from_dict(cls, document_def: dict):
        if not isinstance(document_def, dict):
            raise DocumentError('Document must be a JSON object')
        elements = document_def.get('elements')
        if not isinstance(elements, list):
            raise DocumentError('Document must have an "elements" list')
        return cls(elements=tuple(Element.from_dict(e, i) for i, e in enumerate(elements)),
                   app_state=document_def.get('appState') or {})

    @classmethod
    def from_json(cls, json_text: str):
        try:
            document_def = json.loads(json_text)
        except json.JSONDecodeError as e:
            raise DocumentError(f'Invalid JSON: {e}') from e
        return cls.from_dict(document_def)

    @classmethod
    def from_json_file(cls, json_filename: str):
        with open(json_filename, encoding='utf-8') as json_file:
            return cls.from_json(json_file.read())

    def visible_elements(self) -> list[Element]:
        return [el for el in self.elements if not el.is_deleted]


# ----------------------3. Canvas Bounds----------------------------


@dataclass(frozen=True)
class CanvasBounds:
    min_x: float
    min_y: float
    max_x: float
    max_y: float

    @property
    def width(self):
        return self.max_x - self.min_x

    @property
    def height(self):
        return self.max_y - self.min_y

    def pixel_size(self, scale: float = 1.0) -> WH:
        return max(1, math.ceil(self.width * scale)), max(1, math.ceil(self.height * scale))

    def contains(self, p: XY, tolerance=1e-9):
        return (self.min_x - tolerance <= p[0] <= self.max_x + tolerance
                and self.min_y - tolerance <= p[1] <= self.max_y + tolerance)


def calculate_bounds(elements, padding: float = RenderConfig.padding,
                     empty_wh: WH = RenderConfig.empty_canvas_wh) -> CanvasBounds:
    """Tight box over every visible element, grown by padding on all sides."""
    xs, ys = [], []
    for el in elements:
        if el.is_deleted:
            continue
        for x, y in el.extent_points():
            xs.append(x)
            ys.append(y)
    if not xs:
        return CanvasBounds(0, 0, empty_wh[0], empty_wh[1])
    return CanvasBounds(min(xs) - padding, min(ys) - padding, max(xs) + padding, max(ys) + padding)


# ----------------------4. Geometry Synthesis----------------------------

PathOp = tuple
"""('M', x, y) | ('L', x, y) | ('Q', cx, cy, x, y) | ('C', c1x, c1y, c2x, c2y, x, y) | ('Z',)"""


@dataclass(frozen=True)
class Style:
    """Paint attributes, copied off the element at synthesis time"""
    stroke: RGBA = None
    fill: RGBA = None
    fill_style: FillStyle = FillStyle.SOLID
    stroke_width: float = 1
    stroke_style: StrokeStyle = StrokeStyle.SOLID
    opacity: float = 1.0
    roughness: float = 0

    @classmethod
    def of(cls, el: Element):
        stroke, fill = Color.parse(el.stroke_color), Color.parse(el.background_color)
        return cls(stroke=stroke if stroke[3] and el.stroke_width > 0 else None,
                   fill=fill if fill[3] else None,
                   fill_style=el.fill_style, stroke_width=el.stroke_width, stroke_style=el.stroke_style,
                   opacity=el.opacity / 100, roughness=el.roughness)

    @property
    def dash_array(self):
        w = max(self.stroke_width, 0)
        if self.stroke_style == StrokeStyle.DASHED:
            return 8, 8 + w
        if self.stroke_style == StrokeStyle.DOTTED:
            return 1.5, 6 + w
        return None


@dataclass(frozen=True)
class Polyline:
    points: tuple[XY, ...]
    style: Style


@dataclass(frozen=True)
class Polygon:
    points: tuple[XY, ...]
    style: Style

    def segments(self) -> list[tuple[XY, XY]]:
        return list(zip(self.points, self.points[1:] + self.points[:1]))


@dataclass(frozen=True)
class Ellipse:
    cx: float
    cy: float
    rx: float
    ry: float
    style: Style
    angle: float = 0


@dataclass(frozen=True)
class Curve:
    ops: tuple[PathOp, ...]
    style: Style
    closed: bool = False


@dataclass(frozen=True)
class Cap:
    """An arrowhead: parts drawn at tip, pointing along direction"""
    kind: Arrowhead
    end: End
    tip: XY
    direction: float
    """radians, from the shaft toward the tip"""
    parts: tuple


@dataclass(frozen=True)
class Label:
    lines: tuple[str, ...]
    x: float
    """anchor x, per align"""
    y: float
    """first baseline"""
    font_size: float
    family_id: int
    align: TextAlign
    line_step: float
    color: RGBA
    opacity: float = 1.0
    angle: float = 0
    center: XY = (0, 0)

    def positioned_lines(self):
        for i, line in enumerate(self.lines):
            yield line, (self.x, self.y + i * self.line_step)


Primitive = Union[Polyline, Polygon, Ellipse, Curve, Cap, Label]


def is_closed(prim) -> bool:
    return isinstance(prim, (Polygon, Ellipse)) or (isinstance(prim, Curve) and prim.closed)


def transform_ops(ops, fn) -> tuple[PathOp, ...]:
    result = []
    for cmd, *coords in ops:
        pts = [fn((coords[i], coords[i + 1])) for i in range(0, len(coords), 2)]
        result.append((cmd, *chain.from_iterable(pts)))
    return tuple(result)


def catmull_rom_ops(points, tension=0.5) -> tuple[PathOp, ...]:
    """Smooth cubic path through points, with the end points repeated as tangent guides."""
    n = len(points)
    ops = [('M', *points[0])]
    if n < 3:
        ops.extend(('L', *p) for p in points[1:])
        return tuple(ops)

    def at(i):
        return points[min(max(i, 0), n - 1)]

    for i in range(n - 1):
        (x0, y0), (x1, y1), (x2, y2), (x3, y3) = at(i - 1), at(i), at(i + 1), at(i + 2)
        ops.append(('C', x1 + (x2 - x0) * tension / 3, y1 + (y2 - y0) * tension / 3,
                    x2 - (x3 - x1) * tension / 3, y2 - (y3 - y1) * tension / 3, x2, y2))
    return tuple(ops)


def rounded_rect_ops(x, y, w, h, r) -> tuple[PathOp, ...]:
    """Four straight sides joined by four quadratic corners."""
    r = min(r, w / 2, h / 2)
    return (('M', x + r, y),
            ('L', x + w - r, y), ('Q', x + w, y, x + w, y + r),
            ('L', x + w, y + h - r), ('Q', x + w, y + h, x + w - r, y + h),
            ('L', x + r, y + h), ('Q', x, y + h, x, y + h - r),
            ('L', x, y + r), ('Q', x, y, x + r, y),
            ('Z',))


def _steps_for(*pts: XY) -> int:
    hull = sum(math.dist(a, b) for a, b in zip(pts, pts[1:]))
    return max(4, min(48, int(hull / 4) + 1))


def flatten_ops(ops, steps: int = None) -> list[tuple[list[XY], bool]]:
    """Subpaths of ops as point lists, each with whether it was closed."""
    subpaths = []
    points, closed, start = [], False, None
    for cmd, *c in ops:
        if cmd == 'M':
            if len(points) > 1:
                subpaths.append((points, closed))
            start = (c[0], c[1])
            points, closed = [start], False
        elif cmd == 'L':
            points.append((c[0], c[1]))
        elif cmd == 'Q':
            p0, p1, p2 = points[-1], (c[0], c[1]), (c[2], c[3])
            n = steps or _steps_for(p0, p1, p2)
            for i in range(1, n + 1):
                t = i / n
                u = 1 - t
                points.append((u * u * p0[0] + 2 * u * t * p1[0] + t * t * p2[0],
                               u * u * p0[1] + 2 * u * t * p1[1] + t * t * p2[1]))
        elif cmd == 'C':
            p0, p1, p2, p3 = points[-1], (c[0], c[1]), (c[2], c[3]), (c[4], c[5])
            n = steps or _steps_for(p0, p1, p2, p3)
            for i in range(1, n + 1):
                t = i / n
                u = 1 - t
                points.append((u ** 3 * p0[0] + 3 * u * u * t * p1[0] + 3 * u * t * t * p2[0] + t ** 3 * p3[0],
                               u ** 3 * p0[1] + 3 * u * u * t * p1[1] + 3 * u * t * t * p2[1] + t ** 3 * p3[1]))
        elif cmd == 'Z':
            if points and points[-1] != start:
                points.append(start)
            closed = True
    if len(points) > 1:
        subpaths.append((points, closed))
    return subpaths


def ellipse_points(e: Ellipse, n: int = 72) -> list[XY]:
    return [rotate_point((e.cx + e.rx * math.cos(TAU * i / n), e.cy + e.ry * math.sin(TAU * i / n)),
                         (e.cx, e.cy), e.angle) for i in range(n)]


def outline_of(prim) -> list[XY]:
    """The exact boundary of a shape as points."""
    if isinstance(prim, (Polyline, Polygon)):
        return list(prim.points)
    if isinstance(prim, Ellipse):
        return ellipse_points(prim)
    if isinstance(prim, Curve):
        subpaths = flatten_ops(prim.ops)
        return subpaths[0][0] if subpaths else []
    return []


def outline_ops(prim) -> tuple[PathOp, ...]:
    if isinstance(prim, Curve):
        return prim.ops if prim.ops[-1][0] == 'Z' else prim.ops + (('Z',),)
    pts = outline_of(prim)
    return (('M', *pts[0]), *(('L', *p) for p in pts[1:]), ('Z',))


def arrowhead_cap(kind: Arrowhead, end: End, tail: XY, tip: XY, style: Style, outline_fill: RGBA):
    """Arrowhead parts at tip, for a shaft arriving from tail. None if tail == tip."""
    dx, dy = tip[0] - tail[0], tip[1] - tail[1]
    length = math.hypot(dx, dy)
    if length == 0:
        return None
    nx, ny = dx / length, dy / length
    px, py = -ny, nx
    w = style.stroke_width
    size = min(kind.size * (1 + (w - 1) * 0.3),
               length * (0.25 if kind in (Arrowhead.DIAMOND, Arrowhead.DIAMOND_OUTLINE) else 0.5))
    a = math.radians(kind.angle)
    tx, ty = tip
    cap_style = replace(style, fill=None, fill_style=FillStyle.SOLID, stroke_style=StrokeStyle.SOLID)
    solid_style = replace(cap_style, fill=outline_fill if kind.is_outline else style.stroke)

    def back(theta):
        """point size behind the tip, swung theta off the shaft"""
        c, s = math.cos(theta), math.sin(theta)
        return tx - size * (nx * c - ny * s), ty - size * (nx * s + ny * c)

    base = (tx - nx * size, ty - ny * size)
    if kind == Arrowhead.ARROW:
        parts = (Polyline((back(a), tip, back(-a)), cap_style),)
    elif kind in (Arrowhead.TRIANGLE, Arrowhead.TRIANGLE_OUTLINE):
        parts = (Polygon((tip, back(a), back(-a)), solid_style),)
    elif kind == Arrowhead.BAR:
        half = size / 2
        parts = (Polyline(((tx + px * half, ty + py * half), (tx - px * half, ty - py * half)), cap_style),)
    elif kind in (Arrowhead.DOT, Arrowhead.CIRCLE, Arrowhead.CIRCLE_OUTLINE):
        r = max(size + w - 2, 1) / 2
        parts = (Ellipse(tx, ty, r, r, solid_style),)
    elif kind in (Arrowhead.DIAMOND, Arrowhead.DIAMOND_OUTLINE):
        half = size * math.tan(a)
        parts = (Polygon((tip, (base[0] + px * half, base[1] + py * half), (tx - nx * 2 * size, ty - ny * 2 * size),
                          (base[0] - px * half, base[1] - py * half)), solid_style),)
    else:
        half = size * math.sin(a)
        bar = Polyline(((base[0] + px * half, base[1] + py * half), (base[0] - px * half, base[1] - py * half)),
                       cap_style)
        fan = Polyline((rotate_point(tip, base, -a), base, rotate_point(tip, base, a)), cap_style)
        parts = {Arrowhead.CROWFOOT_ONE: (bar,), Arrowhead.CROWFOOT_MANY: (fan,)}.get(kind, (fan, bar))
    return Cap(kind, end, tip, math.atan2(dy, dx), parts)


def synthesize_rectangle(el: Element, config: RenderConfig) -> list[Primitive]:
    style = Style.of(el)
    radius = el.roundness.corner_radius(min(el.width, el.height)) if el.roundness else 0
    if radius > 0:
        c = el.center
        ops = rounded_rect_ops(el.x, el.y, el.width, el.height, radius)
        return [Curve(transform_ops(ops, lambda p: rotate_point(p, c, el.angle)), style, closed=True)]
    return [Polygon(tuple(el.corners()), style)]


def synthesize_diamond(el: Element, config: RenderConfig) -> list[Primitive]:
    x, y, w, h = el.x, el.y, el.width, el.height
    vertices = ((x + w / 2, y), (x + w, y + h / 2), (x + w / 2, y + h), (x, y + h / 2))
    return [Polygon(tuple(rotate_point(p, el.center, el.angle) for p in vertices), Style.of(el))]


def synthesize_ellipse(el: Element, config: RenderConfig) -> list[Primitive]:
    cx, cy = el.center
    return [Ellipse(cx, cy, el.width / 2, el.height / 2, Style.of(el), el.angle)]


def synthesize_linear(el: Element, config: RenderConfig) -> list[Primitive]:
    pts = el.absolute_points()
    if len(pts) < 2:
        log.warning('Skipping %s %s: needs at least 2 points, has %d', el.kind.value, el.id, len(pts))
        return []
    style = Style.of(el)
    if el.kind == ElementKind.LINE and len(pts) > 2 and pts[0] == pts[-1]:
        # a line returning to its start is a fillable polygon
        return [Polygon(tuple(pts[:-1]), style)]
    style = replace(style, fill=None)
    smooth = el.kind == ElementKind.FREEDRAW or (el.roundness and not el.elbowed)
    result = [Curve(catmull_rom_ops(pts), style) if smooth and len(pts) > 2 else Polyline(tuple(pts), style)]
    for end, kind, tail, tip in ((End.START, el.start_arrowhead, pts[1], pts[0]),
                                 (End.END, el.end_arrowhead, pts[-2], pts[-1])):
        if kind is None:
            continue
        cap = arrowhead_cap(kind, end, tail, tip, style, config.outline_fill())
        if cap is None:
            log.warning('Skipping %s arrowhead of %s: zero-length end segment', end.value, el.id)
        else:
            result.append(cap)
    return result


def synthesize_text(el: Element, config: RenderConfig) -> list[Primitive]:
    if not el.text:
        return []
    x = {TextAlign.LEFT: el.x, TextAlign.CENTER: el.x + el.width / 2, TextAlign.RIGHT: el.x + el.width}[el.text_align]
    color = Color.parse(el.stroke_color)
    return [Label(tuple(el.text.split('\n')), x, el.y + el.font_size * 0.75, el.font_size, el.font_family,
                  el.text_align, el.font_size * el.line_height, color, el.opacity / 100, el.angle, el.center)]


SYNTHESIZERS = {
    ElementKind.RECTANGLE: synthesize_rectangle,
    ElementKind.DIAMOND: synthesize_diamond,
    ElementKind.ELLIPSE: synthesize_ellipse,
    ElementKind.LINE: synthesize_linear,
    ElementKind.ARROW: synthesize_linear,
    ElementKind.FREEDRAW: synthesize_linear,
    ElementKind.TEXT: synthesize_text,
}


def synthesize(el: Element, config: RenderConfig = RenderConfig()) -> list[Primitive]:
    """Primitives for one element in document coordinates; [] if it can't be drawn."""
    synthesizer = SYNTHESIZERS.get(el.kind)
    if synthesizer is None:
        log.warning('Skipping element %s of unsupported type %r', el.id, el.type_name)
        return []
    return synthesizer(el, config)


# ----------------------5. Sketchy Strokes and Fills----------------------------


def element_seed(element_id: str, seed_base: int) -> int:
    digest = hashlib.blake2b(f'{element_id}:{seed_base}'.encode('utf-8'), digest_size=8).digest()
    return int.from_bytes(digest, 'big')


def hatch_lines(outline: list[XY], angle_deg: float, gap: float) -> list[tuple[XY, XY]]:
    """Parallel lines gap apart at angle_deg, clipped to the inside of the outline."""
    if len(outline) < 3 or gap <= 0:
        return []
    a = math.radians(angle_deg)
    c = (sum(p[0] for p in outline) / len(outline), sum(p[1] for p in outline) / len(outline))
    level = [rotate_point(p, c, -a) for p in outline]
    edges = list(zip(level, level[1:] + level[:1]))
    ys = [p[1] for p in level]
    lines = []
    y, y_end = min(ys) + gap / 2, max(ys)
    while y < y_end:
        xs = sorted(x0 + (y - y0) * (x1 - x0) / (y1 - y0)
                    for (x0, y0), (x1, y1) in edges if y0 <= y < y1 or y1 <= y < y0)
        for xa, xb in zip(xs[::2], xs[1::2]):
            if xb - xa > 1e-9:
                lines.append((rotate_point((xa, y), c, a), rotate_point((xb, y), c, a)))
        y += gap
    return lines


def hatch_angles(fill_style: FillStyle, config: RenderConfig) -> list[float]:
    if fill_style == FillStyle.CROSS_HATCH:
        return [config.hachure_angle, config.hachure_angle + 90]
    return [config.hachure_angle]


def fill_weight(style: Style, config: RenderConfig) -> float:
    return max(0.5, style.stroke_width * config.fill_weight_ratio)


def hatch_curves(prim, config: RenderConfig) -> list[Curve]:
    """Straight hatch fill of a closed primitive, one multi-line path per hatch angle."""
    style = prim.style
    hatch_style = Style(stroke=style.fill, stroke_width=fill_weight(style, config), opacity=style.opacity)
    outline = outline_of(prim)
    curves = []
    for angle in hatch_angles(style.fill_style, config):
        lines = hatch_lines(outline, angle, config.hachure_gap)
        if lines:
            curves.append(Curve(tuple(chain.from_iterable((('M', *p0), ('L', *p1)) for p0, p1 in lines)),
                                hatch_style))
    return curves


@dataclass(frozen=True)
class SketchPath:
    ops: tuple[PathOp, ...]
    color: RGBA
    width: float = 0
    filled: bool = False
    opacity: float = 1.0
    dash: tuple[float, ...] = None


@dataclass(frozen=True)
class SketchSet:
    """Hand-drawn rendition of one primitive: fills go under strokes"""
    strokes: tuple[SketchPath, ...] = ()
    fills: tuple[SketchPath, ...] = ()

    @property
    def paths(self):
        return self.fills + self.strokes


class Sketcher:
    """Turns exact primitives into jittered double strokes and hatch fills.
    All randomness comes from rng, so the same seed gives the same sketch."""

    def __init__(self, rng: random.Random, config: RenderConfig):
        self.rng = rng
        self.config = config

    @classmethod
    def for_element(cls, el: Element, config: RenderConfig):
        return cls(random.Random(element_seed(el.id, config.seed_base)), config)

    def amplitude(self, prim) -> float:
        style = prim.style
        pts = outline_of(prim)
        size = max(max(p[0] for p in pts) - min(p[0] for p in pts),
                   max(p[1] for p in pts) - min(p[1] for p in pts)) if pts else 0
        amp = style.roughness * (1 + 0.3 * (style.stroke_width - 1))
        return max(0.0, min(amp, MAX_JITTER_FRACTION * size))

    def sketch(self, prim) -> SketchSet:
        if isinstance(prim, Cap):
            sets = [self.sketch(part) for part in prim.parts]
            return SketchSet(tuple(chain.from_iterable(s.strokes for s in sets)),
                             tuple(chain.from_iterable(s.fills for s in sets)))
        style = prim.style
        amp = self.amplitude(prim)
        fills = self.fill_paths(prim, amp) if style.fill and is_closed(prim) else ()
        strokes = ()
        if style.stroke:
            strokes = tuple(SketchPath(self.stroke_ops(prim, amp, overlay), style.stroke, style.stroke_width,
                                       opacity=style.opacity * pass_opacity, dash=style.dash_array)
                            for overlay, pass_opacity in ((False, 1.0), (True, SECOND_PASS_OPACITY)))
        return SketchSet(strokes, fills)

    def stroke_ops(self, prim, amp: float, overlay: bool) -> tuple[PathOp, ...]:
        if isinstance(prim, Polyline):
            return self.rough_linear(prim.points, False, amp, overlay)
        if isinstance(prim, Polygon):
            return self.rough_linear(prim.points, True, amp, overlay)
        if isinstance(prim, Ellipse):
            return self.rough_ellipse(prim, amp, 1.5 if overlay else 1.0)
        if isinstance(prim, Curve):
            subpaths = flatten_ops(prim.ops, self.config.corner_steps)
            return tuple(chain.from_iterable(self.rough_curve(pts, prim.closed, amp * (0.5 if overlay else 1))
                                             for pts, _ in subpaths))
        raise TypeError(f'Cannot sketch {type(prim).__name__}')

    def fill_paths(self, prim, amp: float) -> tuple[SketchPath, ...]:
        style = prim.style
        if style.fill_style == FillStyle.SOLID:
            return SketchPath(outline_ops(prim), style.fill, filled=True, opacity=style.opacity),
        weight = fill_weight(style, self.config)
        outline = outline_of(prim)
        paths = []
        for angle in hatch_angles(style.fill_style, self.config):
            lines = hatch_lines(outline, angle, self.config.hachure_gap)
            if lines:
                ops = chain.from_iterable(self.rough_segment(p0, p1, amp, overlay=True) for p0, p1 in lines)
                paths.append(SketchPath(tuple(ops), style.fill, weight, opacity=style.opacity))
        return tuple(paths)

    def rough_segment(self, p0: XY, p1: XY, amp: float, overlay=False) -> tuple[PathOp, ...]:
        """One edge as a cubic: ends over/undershoot, the middle bows and wobbles."""
        (x0, y0), (x1, y1) = p0, p1
        length = math.hypot(x1 - x0, y1 - y0)
        if length == 0:
            return ('M', x0, y0), ('L', x1, y1)
        if length < 200:
            gain = 1.0
        elif length > 500:
            gain = 0.4
        else:
            gain = -0.0016668 * length + 1.233334
        offset = min(amp, length / 10) * gain
        if overlay:
            offset /= 2
        rnd = self.rng.uniform
        ux, uy = (x1 - x0) / length, (y1 - y0) / length
        nx, ny = -uy, ux
        run0, run1 = rnd(-offset, offset), rnd(-offset, offset)
        side0, side1 = rnd(-offset, offset), rnd(-offset, offset)
        sx, sy = x0 - ux * run0 + nx * side0, y0 - uy * run0 + ny * side0
        ex, ey = x1 + ux * run1 + nx * side1, y1 + uy * run1 + ny * side1
        bow = rnd(-1, 1) * offset * min(length / 200, MAX_BOW)
        diverge = 0.2 + self.rng.random() * 0.2
        c1x = sx + (ex - sx) * diverge + nx * bow + rnd(-offset, offset)
        c1y = sy + (ey - sy) * diverge + ny * bow + rnd(-offset, offset)
        c2x = sx + (ex - sx) * 2 * diverge + nx * bow + rnd(-offset, offset)
        c2y = sy + (ey - sy) * 2 * diverge + ny * bow + rnd(-offset, offset)
        return ('M', sx, sy), ('C', c1x, c1y, c2x, c2y, ex, ey)

    def rough_linear(self, points, closed: bool, amp: float, overlay: bool) -> tuple[PathOp, ...]:
        edges = zip(points, points[1:] + points[:1] if closed else points[1:])
        return tuple(chain.from_iterable(self.rough_segment(p0, p1, amp, overlay) for p0, p1 in edges))

    def jitter_polyline(self, points, amp: float) -> list[XY]:
        """Nudges each point mostly across the local direction of travel."""
        rnd = self.rng.uniform
        n = len(points)
        out = []
        for i, (x, y) in enumerate(points):
            (ax, ay), (bx, by) = points[max(i - 1, 0)], points[min(i + 1, n - 1)]
            dx, dy = bx - ax, by - ay
            d = max(math.hypot(dx, dy), 1e-6)
            tx, ty = dx / d, dy / d
            perp, tang = rnd(-amp, amp), rnd(-amp * 0.3, amp * 0.3)
            out.append((x - ty * perp + tx * tang, y + tx * perp + ty * tang))
        return out

    def rough_curve(self, points, closed: bool, amp: float) -> tuple[PathOp, ...]:
        if closed and len(points) > 1 and points[0] == points[-1]:
            points = points[:-1]
        jittered = self.jitter_polyline(points, amp)
        if closed:
            jittered.append(jittered[0])
        return catmull_rom_ops(jittered)

    def rough_ellipse(self, e: Ellipse, amp: float, offset_factor: float) -> tuple[PathOp, ...]:
        """Perturbed ring of points, overlapping past the start so the ends meet."""
        rnd = self.rng.uniform
        steps = self.config.curve_step_count
        psq = math.sqrt(TAU * math.sqrt((e.rx ** 2 + e.ry ** 2) / 2))
        step_count = math.ceil(max(steps, steps / math.sqrt(200) * psq))
        increment = TAU / step_count
        noise = amp * offset_factor

        def at(theta, k=1.0):
            return (e.cx + k * e.rx * math.cos(theta) + rnd(-noise, noise),
                    e.cy + k * e.ry * math.sin(theta) + rnd(-noise, noise))

        rad_offset = rnd(-0.5, 0.5) - PI_HALF
        overlap = increment * 0.5
        points = [at(rad_offset - increment, 0.9)]
        theta, end_theta = rad_offset, TAU + rad_offset - 0.01
        while theta < end_theta:
            points.append(at(theta))
            theta += increment
        points.append(at(rad_offset + TAU + overlap * 0.5))
        points.append(at(rad_offset + overlap, 0.98))
        points.append(at(rad_offset + overlap * 0.5, 0.9))
        if e.angle:
            points = [rotate_point(p, (e.cx, e.cy), e.angle) for p in points]
        return catmull_rom_ops(points)


def sketch_element(el: Element, config: RenderConfig = RenderConfig()) -> list[Union[SketchSet, Label]]:
    """The sketch of every primitive of el, in order; labels pass through."""
    sketcher = Sketcher.for_element(el, config)
    return [prim if isinstance(prim, Label) else sketcher.sketch(prim) for prim in synthesize(el, config)]


def dash_polyline(points: list[XY], pattern) -> list[list[XY]]:
    """Splits a polyline into the 'on' runs of an on/off dash pattern."""
    if not pattern or len(points) < 2:
        return [list(points)]
    pattern = [max(v, 0.1) for v in pattern]
    dashes, current = [], [points[0]]
    i, remaining, on = 0, pattern[0], True
    for (x0, y0), (x1, y1) in zip(points, points[1:]):
        seg = math.hypot(x1 - x0, y1 - y0)
        pos = 0.0
        while seg - pos > remaining:
            pos += remaining
            t = pos / seg
            p = (x0 + (x1 - x0) * t, y0 + (y1 - y0) * t)
            if on:
                current.append(p)
                dashes.append(current)
            else:
                current = [p]
            on = not on
            i = (i + 1) % len(pattern)
            remaining = pattern[i]
        remaining -= seg - pos
        if on:
            current.append((x1, y1))
    if on and len(current) > 1:
        dashes.append(current)
    return dashes


# ----------------------6. Output Backends----------------------------


class Out:
    """Drawing surface. Subclasses consume primitives and sketches in document coordinates."""

    def __init__(self, r, bounds: CanvasBounds, config: RenderConfig):
        self.r = r
        self.bounds = bounds
        self.config = config

    def begin_element(self, el: Element): pass
    def end_element(self): pass
    def draw_background(self, col: RGBA): pass
    def draw_polyline(self, prim: Polyline, **markers): pass
    def draw_polygon(self, prim: Polygon): pass
    def draw_ellipse(self, prim: Ellipse): pass
    def draw_curve(self, prim: Curve, **markers): pass
    def draw_label(self, label: Label): pass
    def draw_sketch_path(self, path: SketchPath): pass

    def draw_cap(self, cap: Cap):
        for part in cap.parts:
            self.draw_primitive(part)

    def draw_primitive(self, prim, **markers):
        if isinstance(prim, Polyline):
            self.draw_polyline(prim, **markers)
        elif isinstance(prim, Polygon):
            self.draw_polygon(prim)
        elif isinstance(prim, Ellipse):
            self.draw_ellipse(prim)
        elif isinstance(prim, Curve):
            self.draw_curve(prim, **markers)
        elif isinstance(prim, Cap):
            self.draw_cap(prim)
        elif isinstance(prim, Label):
            self.draw_label(prim)

    def with_hatching(self, prim):
        """Draws any hatch fill of prim as straight lines, returning prim without that fill."""
        style = getattr(prim, 'style', None)
        if style is None or not style.fill or style.fill_style == FillStyle.SOLID or not is_closed(prim):
            return prim
        for hatch in hatch_curves(prim, self.config):
            self.draw_curve(hatch)
        return replace(prim, style=replace(style, fill=None))

    def draw_exact(self, prims: list[Primitive]):
        for prim in prims:
            self.draw_primitive(self.with_hatching(prim))

    def draw_sketch(self, sketch: SketchSet):
        for path in sketch.paths:
            self.draw_sketch_path(path)


class RasterOut(Out):
    """Draws onto a Pillow RGBA image, one transparent layer per element."""
    r: ImageDraw.ImageDraw = None
    anchors = {TextAlign.LEFT: 'ls', TextAlign.CENTER: 'ms', TextAlign.RIGHT: 'rs'}

    def __init__(self, i: Image.Image, bounds: CanvasBounds, config: RenderConfig, scale: float):
        super().__init__(ImageDraw.Draw(i), bounds, config)
        self.image = i
        self.scale = scale
        self.layer = i
        self.origin = (0, 0)

    @classmethod
    def for_image(cls, i: Image.Image, bounds: CanvasBounds, config: RenderConfig):
        return cls(i, bounds, config, config.dpi_scale * config.supersample)

    def _xy(self, x, y) -> XY:
        return ((x - self.bounds.min_x) * self.scale - self.origin[0],
                (y - self.bounds.min_y) * self.scale - self.origin[1])

    def _w(self, width) -> int:
        return max(1, round(width * self.scale))

    def begin_element(self, el: Element):
        reach = max(el.roughness, 0) * max(1 + 0.3 * (el.stroke_width - 1), 0)
        margin = LAYER_MARGIN + 2 * el.stroke_width + JITTER_REACH * reach
        if el.start_arrowhead or el.end_arrowhead:
            margin += Arrowhead.ARROW.size * max(1 + 0.3 * (el.stroke_width - 1), 0)
        pts = [((x - self.bounds.min_x) * self.scale, (y - self.bounds.min_y) * self.scale)
               for x, y in el.extent_points()]
        m = margin * self.scale
        x0 = max(0, math.floor(min(p[0] for p in pts) - m))
        y0 = max(0, math.floor(min(p[1] for p in pts) - m))
        x1 = min(self.image.width, math.ceil(max(p[0] for p in pts) + m))
        y1 = min(self.image.height, math.ceil(max(p[1] for p in pts) + m))
        if el.kind == ElementKind.TEXT or x1 <= x0 or y1 <= y0:
            # text is not measured against its box, so it gets the whole canvas
            x0, y0, x1, y1 = 0, 0, self.image.width, self.image.height
        self.origin = (x0, y0)
        self.layer = Image.new('RGBA', (x1 - x0, y1 - y0), Color.TRANSPARENT.value)
        self.r = ImageDraw.Draw(self.layer)

    def end_element(self):
        self.image.alpha_composite(self.layer, dest=self.origin)
        self.layer, self.origin = self.image, (0, 0)
        self.r = ImageDraw.Draw(self.image)

    def _stroke(self, pts: list[XY], col: RGBA, width: float, opacity: float, dash=None):
        if len(pts) < 2:
            return
        ink, w = Color.with_opacity(col, opacity), self._w(width)
        runs = dash_polyline(pts, [v * self.scale for v in dash]) if dash else [pts]
        for run in runs:
            if len(run) < 2:
                continue
            self.r.line(run, fill=ink, width=w, joint='curve')
            if w >= 3:
                for (x, y) in (run[0], run[-1]):
                    self.r.ellipse((x - w / 2, y - w / 2, x + w / 2, y + w / 2), fill=ink)

    def _fill(self, pts: list[XY], col: RGBA, opacity: float):
        if len(pts) >= 3:
            self.r.polygon(pts, fill=Color.with_opacity(col, opacity))

    def _shape(self, pts: list[XY], style: Style, closed: bool):
        pts = [self._xy(*p) for p in pts]
        if closed and style.fill:
            self._fill(pts, style.fill, style.opacity)
        if style.stroke:
            self._stroke(pts + pts[:1] if closed else pts, style.stroke, style.stroke_width, style.opacity,
                         style.dash_array)

    def draw_polyline(self, prim: Polyline, **markers):
        self._shape(list(prim.points), prim.style, False)

    def draw_polygon(self, prim: Polygon):
        self._shape(list(prim.points), prim.style, True)

    def draw_ellipse(self, prim: Ellipse):
        self._shape(ellipse_points(prim), prim.style, True)

    def draw_curve(self, prim: Curve, **markers):
        for pts, closed in flatten_ops(prim.ops):
            self._shape(pts[:-1] if closed else pts, prim.style, closed)

    def draw_sketch_path(self, path: SketchPath):
        for pts, closed in flatten_ops(path.ops):
            pts = [self._xy(*p) for p in pts]
            if path.filled:
                self._fill(pts, path.color, path.opacity)
            else:
                self._stroke(pts, path.color, path.width, path.opacity, path.dash)

    def draw_label(self, label: Label):
        font = Font.font_for(label.family_id, label.font_size * self.scale, self.config)
        ink = Color.with_opacity(label.color, label.opacity)
        target = Image.new('RGBA', self.layer.size, Color.TRANSPARENT.value) if label.angle else self.layer
        draw = ImageDraw.Draw(target)
        for line, (x, y) in label.positioned_lines():
            if not line:
                continue
            xy = self._xy(x, y)
            try:
                draw.text(xy, line, font=font, fill=ink, anchor=self.anchors[label.align])
            except ValueError:
                # bitmap fonts can't anchor; place the top-left corner instead
                log.warning('Font for %r cannot anchor text, drawing unaligned', line)
                draw.text((xy[0], xy[1] - label.font_size * 0.75 * self.scale), line, font=font, fill=ink)
        if label.angle:
            rotated = target.rotate(-math.degrees(label.angle), resample=Image.Resampling.BICUBIC,
                                    center=self._xy(*label.center))
            self.layer.alpha_composite(rotated)


class SVGOut(Out):
    """Appends drawsvg elements to a Drawing whose view box is the canvas bounds."""
    r: svg.Drawing = None

    def __init__(self, r: svg.Drawing, bounds: CanvasBounds, config: RenderConfig):
        super().__init__(r, bounds, config)
        self.markers = {}

    @classmethod
    def for_drawing(cls, i: svg.Drawing, bounds: CanvasBounds, config: RenderConfig):
        return cls(i, bounds, config)

    @staticmethod
    def paint_args(style: Style) -> dict:
        args = {'stroke_linecap': 'round', 'stroke_linejoin': 'round'}
        if style.stroke:
            args.update(stroke=Color.to_hex(style.stroke), stroke_width=style.stroke_width)
            if style.stroke[3] < FF:
                args['stroke_opacity'] = round(style.stroke[3] / FF, 4)
            if style.dash_array:
                args['stroke_dasharray'] = ' '.join(str(v) for v in style.dash_array)
        else:
            args['stroke'] = 'none'
        if style.fill:
            args['fill'] = Color.to_hex(style.fill)
            if style.fill[3] < FF:
                args['fill_opacity'] = round(style.fill[3] / FF, 4)
        else:
            args['fill'] = 'none'
        if style.opacity < 1:
            args['opacity'] = round(style.opacity, 4)
        return args

    @staticmethod
    def _path_ops(path: svg.Path, ops) -> svg.Path:
        for cmd, *c in ops:
            if cmd == 'M':
                path.M(*c)
            elif cmd == 'L':
                path.L(*c)
            elif cmd == 'Q':
                path.Q(*c)
            elif cmd == 'C':
                path.C(*c)
            elif cmd == 'Z':
                path.Z()
        return path

    def draw_background(self, col: RGBA):
        b = self.bounds
        self.r.append(svg.Rectangle(b.min_x, b.min_y, b.width, b.height,
                                    fill=Color.to_hex(col), fill_opacity=round(col[3] / FF, 4)))

    def draw_polyline(self, prim: Polyline, **markers):
        self.r.append(svg.Lines(*chain.from_iterable(prim.points), close=False, **self.paint_args(prim.style),
                                **markers))

    def draw_polygon(self, prim: Polygon):
        self.r.append(svg.Lines(*chain.from_iterable(prim.points), close=True, **self.paint_args(prim.style)))

    def draw_ellipse(self, prim: Ellipse):
        args = self.paint_args(prim.style)
        if prim.angle:
            args['transform'] = f'rotate({math.degrees(prim.angle)} {prim.cx} {prim.cy})'
        self.r.append(svg.Ellipse(prim.cx, prim.cy, prim.rx, prim.ry, **args))

    def draw_curve(self, prim: Curve, **markers):
        self.r.append(self._path_ops(svg.Path(**self.paint_args(prim.style), **markers), prim.ops))

    def draw_sketch_path(self, path: SketchPath):
        if path.filled:
            args = {'fill': Color.to_hex(path.color), 'stroke': 'none'}
            if path.color[3] < FF:
                args['fill_opacity'] = round(path.color[3] / FF, 4)
        else:
            args = {'fill': 'none', 'stroke': Color.to_hex(path.color), 'stroke_width': path.width,
                    'stroke_linecap': 'round', 'stroke_linejoin': 'round'}
            if path.color[3] < FF:
                args['stroke_opacity'] = round(path.color[3] / FF, 4)
            if path.dash:
                args['stroke_dasharray'] = ' '.join(str(v) for v in path.dash)
        if path.opacity < 1:
            args['opacity'] = round(path.opacity, 4)
        self.r.append(self._path_ops(svg.Path(**args), path.ops))

    def draw_label(self, label: Label):
        group_args = {}
        if label.angle:
            group_args['transform'] = f'rotate({math.degrees(label.angle)} {label.center[0]} {label.center[1]})'
        if label.opacity < 1:
            group_args['opacity'] = round(label.opacity, 4)
        g = svg.Group(**group_args)
        anchor = {TextAlign.LEFT: 'start', TextAlign.CENTER: 'middle', TextAlign.RIGHT: 'end'}[label.align]
        for line, (x, y) in label.positioned_lines():
            if line:
                g.append(svg.Text(line, label.font_size, x, y, font_family=Font.css_family(label.family_id),
                                  fill=Color.to_hex(label.color), text_anchor=anchor,
                                  dominant_baseline='alphabetic', style='white-space: pre'))
        self.r.append(g)

    def marker_for(self, cap: Cap) -> svg.Marker:
        """A reusable marker drawing cap in the frame of the path end it sits on."""
        heading = cap.direction if cap.end == End.END else cap.direction + PI

        def local(p):
            x, y = rotate_point(p, cap.tip, -heading)
            return round(x - cap.tip[0], 3), round(y - cap.tip[1], 3)

        shapes = []
        for part in cap.parts:
            if isinstance(part, Ellipse):
                shapes.append(('circle', local((part.cx, part.cy)), round(part.rx, 3), part.style))
            else:
                shapes.append(('lines', tuple(local(p) for p in part.points), isinstance(part, Polygon), part.style))
        key = tuple(shapes)
        if key in self.markers:
            return self.markers[key]
        extent = []
        for shape in shapes:
            if shape[0] == 'circle':
                (cx, cy), r = shape[1], shape[2]
                extent += [(cx - r, cy - r), (cx + r, cy + r)]
            else:
                extent += shape[1]
        pad = max(s[3].stroke_width for s in shapes) + 1
        marker = svg.Marker(min(p[0] for p in extent) - pad, min(p[1] for p in extent) - pad,
                            max(p[0] for p in extent) + pad, max(p[1] for p in extent) + pad,
                            orient='auto', markerUnits='userSpaceOnUse')
        for kind, geometry, closed_or_r, style in shapes:
            if kind == 'circle':
                marker.append(svg.Circle(*geometry, closed_or_r, **self.paint_args(style)))
            else:
                marker.append(svg.Lines(*chain.from_iterable(geometry), close=closed_or_r, **self.paint_args(style)))
        self.markers[key] = marker
        return marker

    def draw_exact(self, prims: list[Primitive]):
        markers = {f'marker_{cap.end.value}': self.marker_for(cap) for cap in prims if isinstance(cap, Cap)}
        for prim in prims:
            if isinstance(prim, Cap):
                continue
            prim = self.with_hatching(prim)
            if isinstance(prim, (Polyline, Curve)) and not is_closed(prim):
                self.draw_primitive(prim, **markers)
            else:
                self.draw_primitive(prim)


# ----------------------7. Rendering----------------------------


@dataclass(frozen=True)
class Renderer:
    r: Out = None
    config: RenderConfig = RenderConfig()

    @classmethod
    def to_image(cls, i, bounds: CanvasBounds, config: RenderConfig):
        out = None
        if isinstance(i, Image.Image):
            out = RasterOut.for_image(i, bounds, config)
        elif isinstance(i, svg.Drawing):
            out = SVGOut.for_drawing(i, bounds, config)
        return cls(out, config)

    def is_sketchy(self, el: Element):
        return self.config.sketchy and el.roughness > 0

    def draw_element(self, el: Element):
        sketchy = self.is_sketchy(el)
        drawables = sketch_element(el, self.config) if sketchy else synthesize(el, self.config)
        if not drawables:
            return
        self.r.begin_element(el)
        try:
            if sketchy:
                for d in drawables:
                    if isinstance(d, Label):
                        self.r.draw_label(d)
                    else:
                        self.r.draw_sketch(d)
            else:
                self.r.draw_exact(drawables)
        except (ValueError, OSError, MemoryError) as e:
            raise RenderError('draw element', str(e) or e.__class__.__name__, el.id, el.kind.value) from e
        self.r.end_element()

    def draw_document(self, doc: Document):
        for el in doc.visible_elements():
            self.draw_element(el)


def image_for_rendering(bounds: CanvasBounds, out_format: OutFormat, config: RenderConfig, background=None):
    if out_format == OutFormat.PNG:
        w, h = bounds.pixel_size(config.dpi_scale)
        ss = config.supersample
        if w * h * ss * ss > MAX_SURFACE_PIXELS:
            raise RenderError('create surface', f'{w * ss}x{h * ss} pixels exceeds the {MAX_SURFACE_PIXELS} limit')
        try:
            return Image.new('RGBA', (w * ss, h * ss), background or Color.TRANSPARENT.value)
        except (ValueError, MemoryError) as e:
            raise RenderError('create surface', str(e) or e.__class__.__name__) from e
    elif out_format == OutFormat.SVG:
        return svg.Drawing(bounds.width, bounds.height, origin=(bounds.min_x, bounds.min_y))


def encode_png(i: Image.Image, quality: int) -> bytes:
    compress_level = 1 if quality <= 25 else 6 if quality <= 75 else 9
    buffer = BytesIO()
    i.save(buffer, 'PNG', compress_level=compress_level)
    return buffer.getvalue()


def render_svg(doc: Document, config: RenderConfig = RenderConfig(), with_background=True) -> str:
    bounds = calculate_bounds(doc.elements, config.padding, config.empty_canvas_wh)
    drawing = image_for_rendering(bounds, OutFormat.SVG, config)
    r = Renderer.to_image(drawing, bounds, config)
    background = config.background_rgba()
    if with_background and background:
        r.r.draw_background(background)
    r.draw_document(doc)
    return drawing.as_svg()


def render_image(doc: Document, config: RenderConfig = RenderConfig()) -> Image.Image:
    """Draws straight onto a pixel surface, supersampled then scaled down."""
    bounds = calculate_bounds(doc.elements, config.padding, config.empty_canvas_wh)
    img = image_for_rendering(bounds, OutFormat.PNG, config, config.background_rgba())
    Renderer.to_image(img, bounds, config).draw_document(doc)
    if config.supersample > 1:
        img = img.resize(bounds.pixel_size(config.dpi_scale), Image.Resampling.LANCZOS)
    return img


def render_png(doc: Document, config: RenderConfig = RenderConfig()) -> bytes:
    return encode_png(render_image(doc, config), config.quality)


def render_png_legacy(doc: Document, config: RenderConfig = RenderConfig()) -> bytes:
    """Rasterizes the SVG rendition; the rasterizer composites the background."""
    bounds = calculate_bounds(doc.elements, config.padding, config.empty_canvas_wh)
    svg_text = render_svg(doc, config, with_background=False)
    w, h = bounds.pixel_size(config.dpi_scale)
    background = config.background_rgba()
    try:
        import cairosvg
    except (ImportError, OSError) as e:
        raise RenderError('load vector rasterizer', str(e)) from e
    try:
        png_bytes = cairosvg.svg2png(bytestring=svg_text.encode('utf-8'), output_width=w, output_height=h,
                                     background_color=Color.to_css(background) if background else None)
    except Exception as e:
        raise RenderError('rasterize vector document', str(e) or e.__class__.__name__) from e
    with Image.open(BytesIO(png_bytes)) as img:
        return encode_png(img.convert('RGBA'), config.quality)


def render_document(doc: Document, out_format: OutFormat, config: RenderConfig = RenderConfig()):
    """SVG text for SVG; PNG bytes otherwise, direct or through SVG when config.legacy."""
    if out_format == OutFormat.SVG:
        return render_svg(doc, config)
    return render_png_legacy(doc, config) if config.legacy else render_png(doc, config)


def save_output(result, output_filename: str):
    output_full_path = os.path.abspath(output_filename)
    if isinstance(result, bytes):
        with open(output_full_path, 'wb') as output_file:
            output_file.write(result)
    else:
        with open(output_full_path, 'w', encoding='utf-8') as output_file:
            output_file.write(result)
    print(f'Result saved to: file://{output_full_path}')
    return output_full_path


# ----------------------8. Commands------------------------------------------


def main():
    """CLI processor for rendering diagram documents."""
    import argparse
    args_parser = argparse.ArgumentParser(description='Render an Excalidraw JSON document to PNG or SVG')
    args_parser.add_argument('input',
                             help='Path to the diagram JSON document')
    args_parser.add_argument('-o', '--output',
                             help='Output path; a .svg extension writes SVG, anything else PNG '
                                  '(defaults to the input path with .png)')
    args_parser.add_argument('--legacy',
                             action='store_true',
                             help='Render PNG by rasterizing the SVG output')
    args_parser.add_argument('-b', '--background',
                             help="Background color #RRGGBB or #RRGGBBAA, or 'transparent'")
    args_parser.add_argument('-q', '--quality',
                             type=int,
                             help='PNG compression effort 0-100 (higher is smaller and slower)')
    args_parser.add_argument('--dpi',
                             type=int,
                             help='Output DPI for PNG, from a 96 DPI source')
    args_parser.add_argument('--seed',
                             type=int,
                             help='Seed base for the hand-drawn jitter')
    args_parser.add_argument('--exact',
                             action='store_true',
                             help='Draw exact geometry instead of the hand-drawn style')
    args_parser.add_argument('--config',
                             help='Render config TOML path, or the name of a bundled one')
    args_parser.add_argument('--debug',
                             action='store_true',
                             help='Log every skipped element and font fallback')
    cli_args = args_parser.parse_args()
    logging.basicConfig(level=logging.DEBUG if cli_args.debug else logging.WARNING,
                        format='%(levelname)s %(name)s: %(message)s')
    overrides = {}
    if cli_args.background is not None:
        try:
            Color.parse_strict(cli_args.background)
        except ValueError:
            args_parser.error(f'invalid --background {cli_args.background!r}: use #RRGGBB, #RRGGBBAA or transparent')
        overrides['background'] = cli_args.background
    if cli_args.quality is not None:
        if not 0 <= cli_args.quality <= 100:
            args_parser.error('--quality must be within 0-100')
        overrides['quality'] = cli_args.quality
    if cli_args.dpi is not None:
        if cli_args.dpi <= 0:
            args_parser.error('--dpi must be positive')
        overrides['dpi'] = cli_args.dpi
    if cli_args.seed is not None:
        overrides['seed_base'] = cli_args.seed
    if cli_args.legacy:
        overrides['legacy'] = True
    if cli_args.exact:
        overrides['sketchy'] = False
    try:
        config = replace(RenderConfig.load(cli_args.config) if cli_args.config else RenderConfig(), **overrides)
    except (ValueError, OSError) as e:
        args_parser.error(f'invalid render config: {e}')
    output_filename = cli_args.output or os.path.splitext(cli_args.input)[0] + '.png'
    out_format = OutFormat.from_path(output_filename)

    start_time = time.process_time()
    try:
        doc = Document.from_json_file(cli_args.input)
        result = render_document(doc, out_format, config)
        print(f'{out_format.value.upper()} render finished at: {round(time.process_time() - start_time, 3)} seconds')
        save_output(result, output_filename)
    except (DocumentError, RenderError, OSError) as e:
        raise SystemExit(f'error: {e}')
    print(f'Program finished at: {round(time.process_time() - start_time, 3)} seconds')


if __name__ == '__main__':
    main()
