#!/usr/bin/env python3
import argparse
import os.path
import time

from ClockFace import (
    ConfigStore, Exporter, ExportError, ImageLoader, OutFormat, Presets, write_atomic
)


def main():
    args_parser = argparse.ArgumentParser()
    args_parser.add_argument('--format',
                             choices=[f.value for f in OutFormat],
                             default=None,
                             help='Which format to render (all by default)')
    preset_names = list(Presets.names())
    args_parser.add_argument('--preset',
                             choices=preset_names,
                             default=None,
                             help='Which clock face preset (all by default)')
    args_parser.add_argument('--dpi',
                             type=int,
                             default=None,
                             help='Raster resolution (each preset\'s canvas DPI by default)')
    cli_args = args_parser.parse_args()
    base_dir = os.path.relpath('examples/')
    os.makedirs(base_dir, exist_ok=True)
    out_formats = [next(f for f in OutFormat if f.value == cli_args.format)] if cli_args.format else OutFormat
    for preset_name in ([cli_args.preset] if cli_args.preset else preset_names):
        print(f'Building example outputs for: {preset_name}')
        store = ConfigStore(Presets.config_for(preset_name))
        loader = ImageLoader()
        loader.track(store.get())
        exporter = Exporter(store, loader)

        for out_format in out_formats:
            try:
                start_time = time.process_time()
                data = exporter.export(out_format, cli_args.dpi)
                print(f' Render time: {round(time.process_time() - start_time, 3)}')
                output_filename = os.path.join(base_dir, f'{preset_name}.ClockFace.{out_format.value}')
                write_atomic(output_filename, data)
                print(f' {out_format.value.upper()} output for: {preset_name} at: {output_filename}')
            except ExportError as e:
                print(f'Error processing {preset_name}: {e}; Skipping')


if __name__ == '__main__':
    main()
