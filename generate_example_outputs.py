#!/usr/bin/env python3
import argparse
import glob
import os.path
import re
import time
from dataclasses import replace

from SketchRender import Document, DocumentError, OutFormat, RenderConfig, RenderError, render_document, save_output


def example_documents(base_dir):
    for fn in sorted(glob.glob(os.path.join(base_dir, 'Diagram-*.json'))):
        yield re.match(r'Diagram-(.*)\.json$', os.path.basename(fn)).group(1), fn


def main():
    args_parser = argparse.ArgumentParser()
    args_parser.add_argument('--format',
                             choices=[f.value for f in OutFormat],
                             default=None,
                             help='Which format to render (all by default)')
    example_configs = sorted(RenderConfig.example_names())
    args_parser.add_argument('--config',
                             choices=example_configs,
                             default=None,
                             help='Which render config (all by default)')
    args_parser.add_argument('--legacy',
                             action='store_true',
                             help='Also render PNG through the SVG rasterizer')
    cli_args = args_parser.parse_args()
    base_dir = os.path.relpath('examples/')
    os.makedirs(base_dir, exist_ok=True)
    out_formats = [next(f for f in OutFormat if f.value == cli_args.format)] if cli_args.format else OutFormat
    for doc_name, doc_filename in example_documents(base_dir):
        print(f'Building example outputs for: {doc_name}')
        try:
            doc = Document.from_json_file(doc_filename)
        except DocumentError as e:
            print(f'Error reading {doc_filename}: {e}; Skipping')
            continue
        for config_name in ([cli_args.config] if cli_args.config else example_configs):
            config = RenderConfig.load(config_name)
            pipelines = [config]
            if cli_args.legacy and not config.legacy:
                pipelines.append(replace(config, legacy=True))
            for out_format in out_formats:
                for pipeline in (pipelines if out_format == OutFormat.PNG else pipelines[:1]):
                    start_time = time.process_time()
                    suffix = '.legacy' if pipeline.legacy else ''
                    output_filename = os.path.join(base_dir, f'{doc_name}.{config_name}{suffix}.{out_format.value}')
                    try:
                        result = render_document(doc, out_format, pipeline)
                    except RenderError as e:
                        print(f' Error rendering {output_filename}: {e}; Skipping')
                        continue
                    print(f' Render time: {round(time.process_time() - start_time, 3)}')
                    save_output(result, output_filename)


if __name__ == '__main__':
    main()
