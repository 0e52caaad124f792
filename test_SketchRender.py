import io
import json
import math
import os
import sys
import tempfile
import types
import unittest
from dataclasses import replace
from unittest.mock import MagicMock, patch

from PIL import Image, ImageChops

from SketchRender import (Color, ElementKind, FillStyle, StrokeStyle, Arrowhead, TextAlign, End, OutFormat,
                          RenderConfig, DocumentError, RenderError, Roundness, Element, Document,
                          calculate_bounds, synthesize, sketch_element, element_seed, hatch_lines, dash_polyline,
                          catmull_rom_ops, flatten_ops, rotate_point, Polyline, Polygon, Ellipse, Curve, Cap, Label,
                          SketchSet, render_svg, render_image, render_png, render_png_legacy, render_document,
                          encode_png, main, LAYER_MARGIN)

try:
    import cairosvg
except (ImportError, OSError):
    cairosvg = None

EXACT = RenderConfig(sketchy=False)


def element(**kwargs):
    element_def = {'id': 'e1', 'type': 'rectangle', 'x': 0, 'y': 0, 'width': 100, 'height': 50}
    element_def.update(kwargs)
    return Element.from_dict(element_def)


def document(*element_defs):
    return Document.from_dict({'elements': list(element_defs)})


class ColorTestCase(unittest.TestCase):
    def test_hex_forms(self):
        self.assertEqual(Color.parse('#ff0000'), (255, 0, 0, 255))
        self.assertEqual(Color.parse('#ff000080'), (255, 0, 0, 128))
        self.assertEqual(Color.parse('00ff00'), (0, 255, 0, 255))

    def test_transparent_and_blank(self):
        self.assertEqual(Color.parse('transparent'), (0, 0, 0, 0))
        self.assertEqual(Color.parse(''), (0, 0, 0, 0))

    def test_lenient_falls_back_to_black(self):
        self.assertEqual(Color.parse('not-a-color'), (0, 0, 0, 255))

    def test_strict_rejects(self):
        with self.assertRaises(ValueError):
            Color.parse_strict('not-a-color')

    def test_to_hex(self):
        self.assertEqual(Color.to_hex((0x1e, 0x1e, 0x1e, 255)), '#1e1e1e')
        self.assertEqual(Color.to_css((255, 0, 0, 255)), '#ff0000')


class ElementModelTestCase(unittest.TestCase):
    def test_defaults(self):
        el = Element.from_dict({'id': 'a', 'type': 'rectangle'})
        self.assertEqual(el.kind, ElementKind.RECTANGLE)
        self.assertEqual(el.stroke_color, '#1e1e1e')
        self.assertEqual(el.background_color, 'transparent')
        self.assertEqual(el.fill_style, FillStyle.HACHURE)
        self.assertEqual(el.stroke_style, StrokeStyle.SOLID)
        self.assertEqual(el.opacity, 100)
        self.assertEqual(el.roughness, 1)
        self.assertIsNone(el.roundness)

    def test_opacity_clamped(self):
        self.assertEqual(element(opacity=150).opacity, 100)
        self.assertEqual(element(opacity=-5).opacity, 0)

    def test_unsupported_kind_keeps_raw_type(self):
        el = element(type='image', fileId='abc')
        self.assertEqual(el.kind, ElementKind.UNSUPPORTED)
        self.assertEqual(el.type_name, 'image')
        self.assertEqual(el.extra['fileId'], 'abc')

    def test_arrowheads(self):
        el = element(type='arrow', points=[[0, 0], [10, 0]], startArrowhead=None, endArrowhead='triangle_outline')
        self.assertIsNone(el.start_arrowhead)
        self.assertEqual(el.end_arrowhead, Arrowhead.TRIANGLE_OUTLINE)
        self.assertTrue(el.end_arrowhead.is_outline)

    def test_invalid_numbers(self):
        with self.assertRaises(DocumentError):
            element(width=-1)
        with self.assertRaises(DocumentError):
            element(x='abc')
        with self.assertRaises(DocumentError):
            element(y=float('nan'))
        with self.assertRaises(DocumentError):
            element(type='line', points=[[0, 0], ['a', 1]])
        with self.assertRaises(DocumentError):
            element(type='text', text=42)
        with self.assertRaises(DocumentError):
            element(type='text', text='hi', fontFamily=[1])
        with self.assertRaises(DocumentError):
            element(roundness={'type': 3, 'value': 'x'})
        with self.assertRaises(DocumentError):
            element(roundness={'type': 'round'})

    def test_optional_fields_accept_null(self):
        el = element(type='text', text='hi', fontFamily=None, roundness={'type': 3, 'value': None})
        self.assertIsNone(el.font_family)
        self.assertEqual(el.roundness, Roundness(Roundness.ADAPTIVE))

    def test_document_structure(self):
        with self.assertRaises(DocumentError):
            Document.from_dict({'appState': {}})
        with self.assertRaises(DocumentError):
            Document.from_json('{not json')
        with self.assertRaises(DocumentError):
            Document.from_dict({'elements': [42]})

    def test_visible_elements(self):
        doc = document({'id': 'a', 'type': 'rectangle'}, {'id': 'b', 'type': 'rectangle', 'isDeleted': True})
        self.assertEqual([el.id for el in doc.visible_elements()], ['a'])

    def test_missing_id(self):
        doc = document({'type': 'rectangle'}, {'type': 'ellipse'})
        self.assertEqual([el.id for el in doc.elements], ['element-0', 'element-1'])


class RoundnessTestCase(unittest.TestCase):
    def test_proportional(self):
        self.assertEqual(Roundness(Roundness.PROPORTIONAL).corner_radius(200), 50)
        self.assertEqual(Roundness(Roundness.LEGACY).corner_radius(40), 10)

    def test_adaptive(self):
        adaptive = Roundness(Roundness.ADAPTIVE)
        self.assertEqual(adaptive.corner_radius(100), 25)
        self.assertEqual(adaptive.corner_radius(200), 32)
        self.assertEqual(Roundness(Roundness.ADAPTIVE, 10).corner_radius(200), 10)


class BoundsTestCase(unittest.TestCase):
    def test_single_rectangle(self):
        bounds = calculate_bounds([element(roundness={'type': 3})])
        self.assertEqual((bounds.min_x, bounds.min_y, bounds.max_x, bounds.max_y), (-40, -40, 140, 90))
        self.assertEqual(bounds.pixel_size(), (180, 130))

    def test_empty(self):
        bounds = calculate_bounds([])
        self.assertEqual((bounds.min_x, bounds.min_y, bounds.max_x, bounds.max_y), (0, 0, 800, 600))

    def test_deleted_ignored(self):
        only_deleted = calculate_bounds([element(isDeleted=True)])
        self.assertEqual(only_deleted.pixel_size(), (800, 600))
        bounds = calculate_bounds([element(), element(id='e2', x=1000, y=1000, isDeleted=True)])
        self.assertEqual(bounds.max_x, 140)

    def test_line_points(self):
        line = element(type='line', x=10, y=20, width=100, height=30, points=[[0, 0], [100, 30]])
        bounds = calculate_bounds([line], padding=0)
        self.assertEqual((bounds.min_x, bounds.min_y, bounds.max_x, bounds.max_y), (10, 20, 110, 50))

    def test_rotated_line(self):
        line = element(type='line', width=100, height=0, points=[[0, 0], [100, 0]], angle=math.pi / 2)
        bounds = calculate_bounds([line], padding=0)
        self.assertAlmostEqual(bounds.min_x, 50)
        self.assertAlmostEqual(bounds.min_y, -50)
        self.assertAlmostEqual(bounds.max_y, 50)

    def test_contains_all_geometry(self):
        elements = [element(angle=0.7), element(id='d', type='diamond', x=-300, y=80, width=60, height=90, angle=2),
                    element(id='l', type='arrow', x=200, y=-100, width=50, height=50,
                            points=[[0, 0], [50, 50]], angle=1.1)]
        bounds = calculate_bounds(elements, padding=0)
        for el in elements:
            for prim in synthesize(el, EXACT):
                for p in getattr(prim, 'points', ()):
                    self.assertTrue(bounds.contains(p, 1e-6), f'{p} outside {bounds}')


class GeometryTestCase(unittest.TestCase):
    def test_rectangle_is_four_segments(self):
        [prim] = synthesize(element())
        self.assertIsInstance(prim, Polygon)
        self.assertEqual(len(prim.segments()), 4)

    def test_rounded_rectangle(self):
        [prim] = synthesize(element(roundness={'type': 3}))
        self.assertIsInstance(prim, Curve)
        self.assertTrue(prim.closed)
        commands = [op[0] for op in prim.ops]
        self.assertEqual(commands.count('L'), 4)
        self.assertEqual(commands.count('Q'), 4)

    def test_diamond_vertices(self):
        [prim] = synthesize(element(type='diamond', width=40, height=20))
        self.assertEqual(prim.points, ((20, 0), (40, 10), (20, 20), (0, 10)))

    def test_ellipse(self):
        [prim] = synthesize(element(type='ellipse'))
        self.assertIsInstance(prim, Ellipse)
        self.assertEqual((prim.cx, prim.cy, prim.rx, prim.ry), (50, 25, 50, 25))

    def test_rotation_about_center(self):
        [prim] = synthesize(element(angle=math.pi))
        expected = [(100, 50), (0, 50), (0, 0), (100, 0)]
        for (x, y), (ex, ey) in zip(prim.points, expected):
            self.assertAlmostEqual(x, ex)
            self.assertAlmostEqual(y, ey)

    def test_style_copied(self):
        [prim] = synthesize(element(strokeColor='#ff0000', backgroundColor='transparent', opacity=40,
                                    strokeWidth=4, strokeStyle='dashed'))
        self.assertEqual(prim.style.stroke, (255, 0, 0, 255))
        self.assertIsNone(prim.style.fill)
        self.assertAlmostEqual(prim.style.opacity, 0.4)
        self.assertEqual(prim.style.dash_array, (8, 12))

    def test_arrow_wedge_is_symmetric(self):
        arrow = element(type='arrow', width=100, height=0, points=[[0, 0], [100, 0]], endArrowhead='arrow')
        shaft, cap = synthesize(arrow)
        self.assertIsInstance(shaft, Polyline)
        self.assertIsInstance(cap, Cap)
        self.assertEqual((cap.end, cap.tip, cap.direction), (End.END, (100, 0), 0))
        b1, tip, b2 = cap.parts[0].points
        self.assertEqual(tip, (100, 0))
        self.assertAlmostEqual(b1[0], 100 - 25 * math.cos(math.radians(20)))
        self.assertAlmostEqual(b1[0], b2[0])
        self.assertAlmostEqual(b1[1], -b2[1])

    def test_arrow_bisector_follows_shaft(self):
        arrow = element(type='arrow', width=30, height=40, points=[[0, 0], [30, 40]], endArrowhead='triangle')
        cap = synthesize(arrow)[-1]
        tip, b1, b2 = cap.parts[0].points
        mx, my = (b1[0] + b2[0]) / 2 - tip[0], (b1[1] + b2[1]) / 2 - tip[1]
        length = math.hypot(mx, my)
        self.assertAlmostEqual(mx / length, -0.6)
        self.assertAlmostEqual(my / length, -0.8)
        self.assertEqual(cap.parts[0].style.fill, cap.parts[0].style.stroke)

    def test_short_segment_caps_size(self):
        arrow = element(type='arrow', width=10, height=0, points=[[0, 0], [10, 0]], endArrowhead='arrow')
        b1, tip, _ = synthesize(arrow)[-1].parts[0].points
        self.assertAlmostEqual(math.dist(b1, tip), 5)

    def test_start_arrowhead(self):
        arrow = element(type='arrow', width=100, height=0, points=[[0, 0], [100, 0]],
                        startArrowhead='dot', endArrowhead=None)
        shaft, cap = synthesize(arrow)
        self.assertEqual((cap.end, cap.tip), (End.START, (0, 0)))
        self.assertAlmostEqual(cap.direction, math.pi)
        self.assertIsInstance(cap.parts[0], Ellipse)

    def test_crowfoot_parts(self):
        arrow = element(type='arrow', width=100, height=0, points=[[0, 0], [100, 0]],
                        endArrowhead='crowfoot_one_or_many')
        self.assertEqual(len(synthesize(arrow)[-1].parts), 2)

    def test_rounded_line_is_curve(self):
        line = element(type='line', width=100, height=50, points=[[0, 0], [50, 50], [100, 0]],
                       roundness={'type': 2})
        [prim] = synthesize(line)
        self.assertIsInstance(prim, Curve)
        self.assertFalse(prim.closed)
        self.assertEqual(prim.ops[-1][-2:], (100, 0))

    def test_closed_line_is_polygon(self):
        line = element(type='line', backgroundColor='#ff0000', points=[[0, 0], [100, 0], [50, 50], [0, 0]])
        [prim] = synthesize(line)
        self.assertIsInstance(prim, Polygon)
        self.assertEqual(len(prim.points), 3)

    def test_line_needs_two_points(self):
        with self.assertLogs('SketchRender', level='WARNING'):
            self.assertEqual(synthesize(element(type='line', points=[[0, 0]])), [])

    def test_unsupported_skipped(self):
        with self.assertLogs('SketchRender', level='WARNING') as logs:
            self.assertEqual(synthesize(element(type='image')), [])
        self.assertIn('image', logs.output[0])

    def test_text_label(self):
        text = element(type='text', width=200, text='one\ntwo', fontSize=20, textAlign='center', y=10)
        [label] = synthesize(text)
        self.assertIsInstance(label, Label)
        self.assertEqual(label.align, TextAlign.CENTER)
        self.assertEqual(list(label.positioned_lines()), [('one', (100, 25)), ('two', (100, 50))])

    def test_empty_text(self):
        self.assertEqual(synthesize(element(type='text', text='')), [])


class PathHelpersTestCase(unittest.TestCase):
    def test_rotate_point(self):
        x, y = rotate_point((1, 0), (0, 0), math.pi / 2)
        self.assertAlmostEqual(x, 0)
        self.assertAlmostEqual(y, 1)

    def test_catmull_rom_passes_through_points(self):
        points = [(0, 0), (10, 10), (20, 0), (30, 10)]
        ops = catmull_rom_ops(points)
        self.assertEqual(ops[0], ('M', 0, 0))
        self.assertEqual([op[-2:] for op in ops[1:]], points[1:])

    def test_flatten_closed(self):
        [(points, closed)] = flatten_ops((('M', 0, 0), ('L', 10, 0), ('L', 10, 10), ('Z',)))
        self.assertTrue(closed)
        self.assertEqual(points, [(0, 0), (10, 0), (10, 10), (0, 0)])

    def test_dash_polyline(self):
        self.assertEqual(dash_polyline([(0, 0), (20, 0)], (5, 5)),
                         [[(0, 0), (5.0, 0.0)], [(10.0, 0.0), (15.0, 0.0)]])
        self.assertEqual(dash_polyline([(0, 0), (20, 0)], None), [[(0, 0), (20, 0)]])

    def test_hatch_lines_square(self):
        square = [(0, 0), (100, 0), (100, 100), (0, 100)]
        lines = hatch_lines(square, 0, 10)
        self.assertEqual(len(lines), 10)
        for (x0, y0), (x1, y1) in lines:
            self.assertAlmostEqual(y0, y1)
            self.assertAlmostEqual(min(x0, x1), 0)
            self.assertAlmostEqual(max(x0, x1), 100)

    def test_hatch_lines_stay_inside(self):
        triangle = [(0, 0), (100, 0), (50, 80)]
        for p0, p1 in hatch_lines(triangle, -41, 8):
            for x, y in (p0, p1):
                self.assertGreaterEqual(y, -1e-6)
                self.assertLessEqual(y, 80 + 1e-6)

    def test_degenerate_hatch(self):
        self.assertEqual(hatch_lines([(0, 0), (10, 10), (20, 20)], 0, 5), [])


class SketchTestCase(unittest.TestCase):
    def test_seed_stable(self):
        self.assertEqual(element_seed('abc', 0), element_seed('abc', 0))
        self.assertNotEqual(element_seed('abc', 0), element_seed('abd', 0))
        self.assertNotEqual(element_seed('abc', 0), element_seed('abc', 1))

    def test_deterministic(self):
        el = element(backgroundColor='#a5d8ff', roughness=2)
        self.assertEqual(sketch_element(el), sketch_element(el))

    def test_seed_base_changes_sketch(self):
        el = element()
        self.assertNotEqual(sketch_element(el, RenderConfig(seed_base=1)),
                            sketch_element(el, RenderConfig(seed_base=2)))

    def test_two_stroke_passes(self):
        [sketch] = sketch_element(element(opacity=50))
        self.assertIsInstance(sketch, SketchSet)
        self.assertEqual(len(sketch.strokes), 2)
        self.assertEqual([s.opacity for s in sketch.strokes], [0.5, 0.5 * 0.85])
        self.assertEqual(sketch.fills, ())

    def test_fill_styles(self):
        [hachure] = sketch_element(element(backgroundColor='#ff0000', fillStyle='hachure'))
        self.assertEqual(len(hachure.fills), 1)
        self.assertEqual(hachure.fills[0].width, 0.5)
        [cross] = sketch_element(element(backgroundColor='#ff0000', fillStyle='cross-hatch'))
        self.assertEqual(len(cross.fills), 2)
        [solid] = sketch_element(element(backgroundColor='#ff0000', fillStyle='solid'))
        self.assertEqual(len(solid.fills), 1)
        self.assertTrue(solid.fills[0].filled)
        self.assertEqual(solid.paths[0], solid.fills[0])

    def test_jitter_is_bounded(self):
        [sketch] = sketch_element(element(roughness=1))
        for path in sketch.strokes:
            for points, _ in flatten_ops(path.ops):
                for x, y in points:
                    self.assertTrue(-5 <= x <= 105 and -5 <= y <= 55, (x, y))

    def test_bowing_is_bounded_on_long_edges(self):
        line = element(type='line', width=20000, height=0, points=[[0, 0], [20000, 0]], roughness=3)
        for sketch in sketch_element(line):
            for path in sketch.strokes:
                for points, _ in flatten_ops(path.ops):
                    self.assertLess(max(abs(y) for _, y in points), 24)

    def test_ellipse_sketch(self):
        [sketch] = sketch_element(element(type='ellipse', angle=0.5))
        self.assertEqual(len(sketch.strokes), 2)
        self.assertEqual(sketch.strokes[0].ops[0][0], 'M')

    def test_arrow_sketch_includes_cap(self):
        arrow = element(type='arrow', width=100, height=0, points=[[0, 0], [100, 0]], endArrowhead='triangle')
        shaft, cap = sketch_element(arrow)
        self.assertEqual(len(shaft.strokes), 2)
        self.assertEqual(len(cap.strokes), 2)
        self.assertEqual(len(cap.fills), 1)

    def test_labels_pass_through(self):
        [label] = sketch_element(element(type='text', text='hi'))
        self.assertIsInstance(label, Label)


class RenderConfigTestCase(unittest.TestCase):
    def test_from_dict(self):
        config = RenderConfig.from_dict({'padding': 10, 'empty_canvas_wh': [320, 200], 'sketchy': False})
        self.assertEqual(config.padding, 10)
        self.assertEqual(config.empty_canvas_wh, (320, 200))
        self.assertFalse(config.sketchy)

    def test_rejects_unknown_and_invalid(self):
        with self.assertRaises(ValueError):
            RenderConfig.from_dict({'paddding': 10})
        with self.assertRaises(ValueError):
            RenderConfig(quality=101)
        with self.assertRaises(ValueError):
            RenderConfig(background='bogus')
        with self.assertRaises(ValueError):
            RenderConfig(hachure_gap=0)

    def test_from_toml_file(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, 'render.toml')
            with open(path, 'w') as f:
                f.write('dpi = 192\nbackground = "transparent"\n[font_files]\n"Liberation Sans" = ["Arial.ttf"]\n')
            config = RenderConfig.from_toml_file(path)
        self.assertEqual(config.dpi_scale, 2)
        self.assertIsNone(config.background_rgba())
        self.assertEqual(config.font_files['Liberation Sans'], ('Arial.ttf',))
        self.assertIn('Excalifont', config.font_files)

    def test_examples(self):
        self.assertIn('Default', list(RenderConfig.example_names()))
        self.assertFalse(RenderConfig.load('Exact').sketchy)


class SVGRenderTestCase(unittest.TestCase):
    def test_canvas(self):
        out = render_svg(document({'id': 'a', 'type': 'rectangle', 'width': 100, 'height': 50}))
        self.assertIn('<svg', out)
        self.assertIn('viewBox', out)
        self.assertIn('#ffffff', out)

    def test_background(self):
        doc = document({'id': 'a', 'type': 'ellipse', 'width': 10, 'height': 10})
        self.assertIn('#ff0000', render_svg(doc, RenderConfig(background='#ff0000')))
        self.assertNotIn('<rect', render_svg(doc, RenderConfig(background='transparent')))

    def test_exact_arrow_uses_markers(self):
        doc = document({'id': 'a', 'type': 'arrow', 'width': 100, 'height': 0, 'points': [[0, 0], [100, 0]],
                        'startArrowhead': 'bar', 'endArrowhead': 'arrow'})
        out = render_svg(doc, EXACT)
        self.assertEqual(out.count('<marker'), 2)
        self.assertIn('marker-end', out)
        self.assertIn('marker-start', out)
        self.assertNotIn('<marker', render_svg(doc))

    def test_shared_marker(self):
        doc = document(*({'id': f'a{i}', 'type': 'arrow', 'x': 0, 'y': i * 20, 'width': 100, 'height': 0,
                          'points': [[0, 0], [100, 0]], 'endArrowhead': 'triangle'} for i in range(3)))
        self.assertEqual(render_svg(doc, EXACT).count('<marker'), 1)

    def test_byte_identical(self):
        with open(os.path.join(RenderConfig.example_dir_path, 'Diagram-Flow.json')) as f:
            doc = Document.from_json(f.read())
        self.assertEqual(render_svg(doc), render_svg(doc))
        self.assertEqual(render_svg(doc, EXACT), render_svg(doc, EXACT))

    def test_exact_hatch_is_drawn(self):
        doc = document({'id': 'a', 'type': 'rectangle', 'width': 100, 'height': 100,
                        'backgroundColor': '#00ff00', 'fillStyle': 'hachure'})
        self.assertIn('#00ff00', render_svg(doc, EXACT))

    def test_text(self):
        doc = document({'id': 't', 'type': 'text', 'width': 100, 'height': 25, 'text': 'a < b',
                        'fontFamily': 2, 'angle': 0.2})
        out = render_svg(doc)
        self.assertIn('a &lt; b', out)
        self.assertIn('Cascadia Code', out)
        self.assertIn('rotate(', out)

    def test_unsupported_does_not_abort(self):
        doc = document({'id': 'f', 'type': 'frame', 'width': 10, 'height': 10},
                       {'id': 'a', 'type': 'ellipse', 'width': 10, 'height': 10, 'strokeColor': '#123456'})
        with self.assertLogs('SketchRender', level='WARNING'):
            out = render_svg(doc)
        self.assertIn('#123456', out)


class RasterRenderTestCase(unittest.TestCase):
    def test_size(self):
        doc = document({'id': 'a', 'type': 'rectangle', 'width': 100, 'height': 50})
        self.assertEqual(render_image(doc).size, (180, 130))
        self.assertEqual(render_image(doc, RenderConfig(dpi=192)).size, (360, 260))

    def test_empty_canvas(self):
        img = render_image(document())
        self.assertEqual(img.size, (800, 600))
        self.assertEqual(img.getpixel((10, 10)), (255, 255, 255, 255))

    def test_transparent_background(self):
        img = render_image(document(), RenderConfig(background='transparent'))
        self.assertEqual(img.getpixel((10, 10))[3], 0)

    def test_z_order(self):
        doc = document({'id': 'red', 'type': 'rectangle', 'width': 100, 'height': 100,
                        'backgroundColor': '#ff0000', 'fillStyle': 'solid'},
                       {'id': 'blue', 'type': 'rectangle', 'x': 50, 'y': 50, 'width': 100, 'height': 100,
                        'backgroundColor': '#0000ff', 'fillStyle': 'solid'})
        img = render_image(doc, EXACT)
        for xy, expected in (((40 + 25, 40 + 25), (255, 0, 0, 255)), ((40 + 75, 40 + 75), (0, 0, 255, 255))):
            for channel, value in zip(img.getpixel(xy), expected):
                self.assertAlmostEqual(channel, value, delta=1)

    def test_element_opacity(self):
        doc = document({'id': 'a', 'type': 'rectangle', 'width': 100, 'height': 100, 'opacity': 50,
                        'backgroundColor': '#ff0000', 'fillStyle': 'solid'})
        r, g, b, a = render_image(doc, EXACT).getpixel((90, 90))
        self.assertEqual((r, a), (255, 255))
        self.assertAlmostEqual(g, 128, delta=2)
        self.assertAlmostEqual(b, 128, delta=2)

    def test_sketchy_png(self):
        with open(os.path.join(RenderConfig.example_dir_path, 'Diagram-Basic.json')) as f:
            doc = Document.from_json(f.read())
        png = render_png(doc)
        self.assertTrue(png.startswith(b'\x89PNG'))
        with Image.open(io.BytesIO(png)) as img:
            self.assertEqual(img.size, calculate_bounds(doc.elements).pixel_size())

    def test_text_is_drawn(self):
        doc = document({'id': 't', 'type': 'text', 'width': 100, 'height': 40, 'text': 'Hello',
                        'fontSize': 32, 'strokeColor': '#000000'})
        img = render_image(doc).convert('L')
        self.assertLess(min(img.crop((40, 40, 140, 80)).getdata()), 200)

    def test_quality_levels_decode(self):
        img = Image.new('RGBA', (20, 10), (255, 0, 0, 255))
        for quality in (0, 50, 100):
            with Image.open(io.BytesIO(encode_png(img, quality))) as decoded:
                self.assertEqual(decoded.size, (20, 10))

    def test_text_wider_than_its_box(self):
        doc = document({'id': 't', 'type': 'text', 'width': 20, 'height': 25, 'text': 'M' * 48,
                        'fontSize': 20, 'strokeColor': '#000000'},
                       {'id': 'far', 'type': 'ellipse', 'x': 800, 'y': 0, 'width': 10, 'height': 10})
        img = render_image(doc, replace(EXACT, supersample=1)).convert('L')
        self.assertLess(img.crop((140, 40, 600, 70)).getextrema()[0], 128)

    def test_surface_limit(self):
        doc = document({'id': 'huge', 'type': 'rectangle', 'width': 100000, 'height': 100000})
        with self.assertRaises(RenderError) as raised:
            render_png(doc)
        self.assertIn('create surface', str(raised.exception))


def ink_bbox(img, background=(255, 255, 255)):
    rgb = img.convert('RGB')
    diff = ImageChops.difference(rgb, Image.new('RGB', rgb.size, background)).convert('L')
    return diff.point(lambda v: 255 if v > 64 else 0).getbbox()


class BackendParityTestCase(unittest.TestCase):
    """Raster ink must cover the same geometry the vector backend serializes."""

    def test_arrowhead_extent(self):
        arrow = {'id': 'a', 'type': 'arrow', 'width': 200, 'height': 0, 'points': [[0, 0], [200, 0]],
                 'strokeWidth': 8, 'strokeColor': '#000000', 'endArrowhead': 'triangle'}
        cap = synthesize(Element.from_dict(arrow), EXACT)[-1]
        cap_ys = [y for part in cap.parts for _, y in part.points]
        self.assertIn('<marker', render_svg(document(arrow), EXACT))
        left, top, right, bottom = ink_bbox(render_image(document(arrow), EXACT))
        half_width = 4
        self.assertAlmostEqual(left, 40 - half_width, delta=3)
        self.assertAlmostEqual(right, 40 + 200 + half_width, delta=3)
        self.assertAlmostEqual(top, 40 + min(cap_ys) - half_width, delta=3)
        self.assertAlmostEqual(bottom, 40 + max(cap_ys) + half_width, delta=3)

    def test_sketched_arrowhead_is_not_clipped(self):
        arrow = {'id': 'a', 'type': 'arrow', 'width': 200, 'height': 0, 'points': [[0, 0], [200, 0]],
                 'strokeWidth': 12, 'strokeColor': '#000000', 'endArrowhead': 'arrow'}
        cap = synthesize(Element.from_dict(arrow))[-1]
        top, bottom = min(y for _, y in cap.parts[0].points), max(y for _, y in cap.parts[0].points)
        _, ink_top, _, ink_bottom = ink_bbox(render_image(document(arrow)))
        self.assertLessEqual(ink_top, 40 + top + 8)
        self.assertGreaterEqual(ink_bottom, 40 + bottom - 8)

    def test_text_is_never_clipped(self):
        text = {'id': 't', 'type': 'text', 'x': 0, 'y': 0, 'width': 10, 'height': 25, 'text': 'W' * 30,
                'fontSize': 20, 'strokeColor': '#000000'}
        wide = {'id': 'w', 'type': 'rectangle', 'x': 0, 'y': 100, 'width': 700, 'height': 10,
                'strokeColor': 'transparent'}
        out = render_svg(document(text, wide), EXACT)
        self.assertIn('W' * 30, out)
        self.assertNotIn('clip', out)
        _, _, right, _ = ink_bbox(render_image(document(text, wide), EXACT))
        self.assertGreater(right, 40 + 10 + LAYER_MARGIN)


class LegacyPipelineTestCase(unittest.TestCase):
    doc = document({'id': 'a', 'type': 'rectangle', 'width': 100, 'height': 50})

    @staticmethod
    def fake_rasterizer(**kwargs):
        buffer = io.BytesIO()
        Image.new('RGBA', (kwargs['output_width'], kwargs['output_height']), (255, 255, 255, 255)).save(buffer, 'PNG')
        return buffer.getvalue()

    def test_rasterizes_svg_at_canvas_size(self):
        fake = types.ModuleType('cairosvg')
        fake.svg2png = MagicMock(side_effect=self.fake_rasterizer)
        with patch.dict(sys.modules, {'cairosvg': fake}):
            png = render_png_legacy(self.doc, RenderConfig(dpi=192))
        kwargs = fake.svg2png.call_args.kwargs
        self.assertEqual((kwargs['output_width'], kwargs['output_height']), (360, 260))
        self.assertEqual(kwargs['background_color'], '#ffffff')
        self.assertNotIn(b'<rect', kwargs['bytestring'])
        with Image.open(io.BytesIO(png)) as img:
            self.assertEqual(img.size, (360, 260))

    def test_render_document_dispatch(self):
        fake = types.ModuleType('cairosvg')
        fake.svg2png = MagicMock(side_effect=self.fake_rasterizer)
        with patch.dict(sys.modules, {'cairosvg': fake}):
            render_document(self.doc, OutFormat.PNG, RenderConfig(legacy=True))
            render_document(self.doc, OutFormat.PNG, RenderConfig())
        self.assertEqual(fake.svg2png.call_count, 1)
        self.assertIsInstance(render_document(self.doc, OutFormat.SVG), str)

    def test_backend_failure(self):
        fake = types.ModuleType('cairosvg')
        fake.svg2png = MagicMock(side_effect=ValueError('broken'))
        with patch.dict(sys.modules, {'cairosvg': fake}):
            with self.assertRaises(RenderError) as raised:
                render_png_legacy(self.doc)
        self.assertIn('broken', str(raised.exception))

    @unittest.skipUnless(cairosvg, 'cairosvg with libcairo is not available')
    def test_matches_direct_pipeline(self):
        doc = document({'id': 'a', 'type': 'rectangle', 'width': 100, 'height': 60,
                        'backgroundColor': '#1971c2', 'fillStyle': 'solid'})
        with Image.open(io.BytesIO(render_png_legacy(doc, EXACT))) as legacy:
            legacy = legacy.convert('RGBA')
        direct = render_image(doc, EXACT)
        self.assertEqual(legacy.size, direct.size)
        for xy in ((5, 5), (90, 70)):
            for a, b in zip(legacy.getpixel(xy), direct.getpixel(xy)):
                self.assertAlmostEqual(a, b, delta=8)


class CommandTestCase(unittest.TestCase):
    def test_svg_output(self):
        with tempfile.TemporaryDirectory() as tmp:
            input_path, output_path = os.path.join(tmp, 'in.json'), os.path.join(tmp, 'out.svg')
            with open(input_path, 'w') as f:
                json.dump({'elements': [{'id': 'a', 'type': 'diamond', 'width': 40, 'height': 20}]}, f)
            with patch('sys.argv', ['SketchRender.py', input_path, '-o', output_path, '--exact', '--seed', '3']), \
                    patch('builtins.print'):
                main()
            with open(output_path) as f:
                self.assertIn('<svg', f.read())

    def test_default_png_output(self):
        with tempfile.TemporaryDirectory() as tmp:
            input_path = os.path.join(tmp, 'in.json')
            with open(input_path, 'w') as f:
                json.dump({'elements': []}, f)
            with patch('sys.argv', ['SketchRender.py', input_path, '-b', 'transparent']), patch('builtins.print'):
                main()
            with Image.open(os.path.join(tmp, 'in.png')) as img:
                self.assertEqual(img.size, (800, 600))

    def test_invalid_document(self):
        with tempfile.TemporaryDirectory() as tmp:
            input_path = os.path.join(tmp, 'in.json')
            with open(input_path, 'w') as f:
                f.write('{"elements": 3}')
            with patch('sys.argv', ['SketchRender.py', input_path]), patch('builtins.print'):
                with self.assertRaises(SystemExit):
                    main()

    def test_invalid_background(self):
        with patch('sys.argv', ['SketchRender.py', 'in.json', '-b', 'nope']), patch('sys.stderr'):
            with self.assertRaises(SystemExit):
                main()


if __name__ == '__main__':
    unittest.main()
