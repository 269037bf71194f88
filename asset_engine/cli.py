"""asset-generator CLI entrypoints."""

from __future__ import annotations

import argparse
import json
import signal
import sys
import threading
from dataclasses import asdict, is_dataclass
from pathlib import Path
from typing import Any, Callable

from .cli_progress import ProgressBar
from .client import (
    AssetClient,
    AssetClientError,
    DownloadError,
    DownloadOptions,
    GenerationRequest,
    ListModelsOptions,
    ServerUnreachableError,
)
from .config import ClientConfig
from .processor.crop import DEFAULT_THRESHOLD, DEFAULT_TOLERANCE, CropOptions, auto_crop, auto_crop_in_place
from .processor.formats import DEFAULT_JPEG_QUALITY, ProcessingError
from .processor.resize import ResizeFilter, ResizeOptions, downscale, downscale_in_place, image_dimensions
from .utils import load_dotenv


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="asset-generator", description="SwarmUI asset generation client")
    parser.add_argument("--api-url", dest="api_url", help="Generation API base URL")
    parser.add_argument("--api-key", dest="api_key", help="Generation API key")
    parser.add_argument("--events", help="Append JSONL events to this path")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose diagnostics on stderr")
    parser.add_argument("-q", "--quiet", action="store_true", help="Errors only")
    sub = parser.add_subparsers(dest="command")

    gen = sub.add_parser("generate", help="Generate images from a prompt")
    gen.add_argument("-p", "--prompt", required=True)
    gen.add_argument("--model", default="")
    gen.add_argument("--steps", type=int, default=20)
    gen.add_argument("-w", "--width", type=int, default=512)
    gen.add_argument("-l", "--length", "--height", dest="height", type=int, default=512)
    gen.add_argument("--seed", type=int, default=-1, help="-1 for random")
    gen.add_argument("-b", "--batch", dest="images", type=int, default=1)
    gen.add_argument("--cfg-scale", dest="cfg_scale", type=float, default=7.5)
    gen.add_argument("--sampler", default="euler_a")
    gen.add_argument("-n", "--negative-prompt", dest="negative_prompt", default="")
    gen.add_argument("--skimmed-cfg", dest="skimmed_cfg", action="store_true")
    gen.add_argument("--skimmed-cfg-scale", dest="skimmed_cfg_scale", type=float, default=3.0)
    gen.add_argument("--skimmed-cfg-start", dest="skimmed_cfg_start", type=float, default=0.0)
    gen.add_argument("--skimmed-cfg-end", dest="skimmed_cfg_end", type=float, default=1.0)
    gen.add_argument("--websocket", action="store_true", help="Real-time progress over WebSocket")
    gen.add_argument("--save-images", dest="save_images", action="store_true")
    gen.add_argument("--output-dir", dest="output_dir", default=".")
    gen.add_argument("--filename-template", dest="filename_template", default="")
    gen.add_argument("--auto-crop", dest="auto_crop", action="store_true")
    gen.add_argument("--auto-crop-threshold", dest="auto_crop_threshold", type=int, default=DEFAULT_THRESHOLD)
    gen.add_argument("--auto-crop-tolerance", dest="auto_crop_tolerance", type=int, default=DEFAULT_TOLERANCE)
    gen.add_argument("--auto-crop-preserve-aspect", dest="auto_crop_preserve_aspect", action="store_true")
    gen.add_argument("--downscale-width", dest="downscale_width", type=int, default=0)
    gen.add_argument("--downscale-height", dest="downscale_height", type=int, default=0)
    gen.add_argument("--downscale-percentage", dest="downscale_percentage", type=float, default=0.0)
    gen.add_argument("--downscale-filter", dest="downscale_filter", default=ResizeFilter.LANCZOS.value)

    models = sub.add_parser("models", help="Query available models")
    models_sub = models.add_subparsers(dest="models_command")
    models_list = models_sub.add_parser("list", help="List models")
    models_list.add_argument("--subtype", default="Stable-Diffusion")
    models_list.add_argument("--path", default="")
    models_get = models_sub.add_parser("get", help="Show a single model")
    models_get.add_argument("name")

    sub.add_parser("status", help="Server and generation status")

    cancel = sub.add_parser("cancel", help="Interrupt generation")
    cancel.add_argument("--all", action="store_true", help="Cancel every queued generation")

    crop = sub.add_parser("crop", help="Crop whitespace borders from local images")
    crop.add_argument("files", nargs="+")
    crop.add_argument("--threshold", type=int, default=DEFAULT_THRESHOLD)
    crop.add_argument("--tolerance", type=int, default=DEFAULT_TOLERANCE)
    crop.add_argument("--preserve-aspect", dest="preserve_aspect", action="store_true")
    crop.add_argument("--quality", type=int, default=DEFAULT_JPEG_QUALITY)
    crop.add_argument("-o", "--output", default="")
    crop.add_argument("-i", "--in-place", dest="in_place", action="store_true")

    down = sub.add_parser("downscale", help="Downscale local images")
    down.add_argument("files", nargs="+")
    down.add_argument("-w", "--width", type=int, default=0)
    down.add_argument("-l", "--height", type=int, default=0)
    down.add_argument("-p", "--percentage", type=float, default=0.0)
    down.add_argument("--filter", default=ResizeFilter.LANCZOS.value)
    down.add_argument("--quality", type=int, default=DEFAULT_JPEG_QUALITY)
    down.add_argument("--output-file", dest="output", default="")
    down.add_argument("--in-place", dest="in_place", action="store_true")
    return parser


def _jsonable(value: Any) -> Any:
    if is_dataclass(value) and not isinstance(value, type):
        return asdict(value)
    return str(value)


def _print_json(payload: Any) -> None:
    if is_dataclass(payload) and not isinstance(payload, type):
        payload = asdict(payload)
    elif isinstance(payload, list):
        payload = [asdict(item) if is_dataclass(item) else item for item in payload]
    print(json.dumps(payload, indent=2, default=_jsonable, ensure_ascii=False))


def _err(message: str) -> None:
    print(message, file=sys.stderr)


def _make_client(args: argparse.Namespace) -> AssetClient:
    config = ClientConfig.from_env()
    if args.api_url:
        config.base_url = args.api_url.strip().rstrip("/")
    if args.api_key:
        config.api_key = args.api_key
    if args.verbose:
        config.verbose = True
    if args.events:
        config.events_path = Path(args.events)
    return AssetClient(config)


def _install_signal_handlers(cancel: threading.Event) -> Callable[[], None]:
    """First SIGINT or SIGTERM requests cancellation; a second one aborts immediately."""
    signums = (signal.SIGINT, signal.SIGTERM)
    previous = {signum: signal.getsignal(signum) for signum in signums}

    def handler(signum: int, frame: Any) -> None:
        if cancel.is_set():
            raise KeyboardInterrupt
        _err("\nReceived interrupt signal, cancelling...")
        cancel.set()

    for signum in signums:
        signal.signal(signum, handler)

    def restore() -> None:
        for signum, action in previous.items():
            if action is not None:
                signal.signal(signum, action)

    return restore


def _generation_parameters(args: argparse.Namespace) -> dict[str, Any]:
    params: dict[str, Any] = {
        "steps": args.steps,
        "width": args.width,
        "height": args.height,
        "cfgscale": args.cfg_scale,
        "sampler": args.sampler,
        "images": args.images,
    }
    if args.negative_prompt:
        params["negative_prompt"] = args.negative_prompt
    if args.seed >= 0:
        params["seed"] = args.seed
    if args.skimmed_cfg:
        params["skimmedcfg"] = True
        params["skimmedcfgscale"] = args.skimmed_cfg_scale
        if args.skimmed_cfg_start != 0.0:
            params["skimmedcfgstart"] = args.skimmed_cfg_start
        if args.skimmed_cfg_end != 1.0:
            params["skimmedcfgend"] = args.skimmed_cfg_end
    return params


def _download_options(args: argparse.Namespace) -> DownloadOptions:
    metadata: dict[str, Any] = {
        "prompt": args.prompt,
        "model": args.model,
        "width": args.width,
        "height": args.height,
    }
    if args.seed >= 0:
        metadata["seed"] = args.seed
    return DownloadOptions(
        output_dir=args.output_dir,
        filename_template=args.filename_template,
        metadata=metadata,
        auto_crop=args.auto_crop,
        crop_threshold=args.auto_crop_threshold,
        crop_tolerance=args.auto_crop_tolerance,
        crop_preserve_aspect=args.auto_crop_preserve_aspect,
        resize_width=args.downscale_width,
        resize_height=args.downscale_height,
        resize_percentage=args.downscale_percentage,
        resize_filter=args.downscale_filter,
    )


def _handle_generate(args: argparse.Namespace) -> int:
    options = _download_options(args) if args.save_images else None
    if options is not None:
        try:
            options.pipeline()
        except ProcessingError as exc:
            _err(f"Invalid post-processing options: {exc}")
            return 2

    client = _make_client(args)
    if args.model:
        try:
            client.get_model(args.model)
        except AssetClientError as exc:
            _err(f"Model validation failed: {exc}")
            return 1

    bar = None if args.quiet else ProgressBar("Generating")
    request = GenerationRequest(
        prompt=args.prompt,
        model=args.model or None,
        parameters=_generation_parameters(args),
        progress_callback=bar,
    )
    if not args.quiet:
        noun = f"{args.images} images" if args.images > 1 else "image"
        _err(f"Generating {noun} with prompt: {args.prompt}")

    cancel = threading.Event()
    restore = _install_signal_handlers(cancel)
    try:
        try:
            if args.websocket:
                result = client.generate_ws(request, cancel)
            else:
                result = client.generate(request, cancel)
        except AssetClientError as exc:
            if bar is not None:
                bar.finish(done=False)
            _err(f"Generation failed: {exc}")
            return 1
        if bar is not None:
            bar.finish(done=True)

        output: dict[str, Any] = {
            "image_paths": result.image_paths,
            "metadata": result.metadata,
            "status": result.status,
            "created_at": result.created_at.isoformat(),
        }
        code = 0
        if options is not None:
            if not args.quiet:
                _err("Downloading generated images...")
            try:
                saved = client.download_images(result.image_paths, options, cancel)
            except DownloadError as exc:
                saved = exc.saved_paths
                output["download_errors"] = exc.failures
                _err(str(exc))
                code = 1
            except AssetClientError as exc:
                saved = []
                _err(f"Download failed: {exc}")
                code = 1
            output["saved_paths"] = [str(path) for path in saved]
        _print_json(output)
        return code
    finally:
        restore()
        client.close()


def _handle_models(args: argparse.Namespace) -> int:
    client = _make_client(args)
    try:
        if args.models_command == "get":
            _print_json(client.get_model(args.name))
            return 0
        if args.models_command in (None, "list"):
            options = ListModelsOptions(
                subtype=getattr(args, "subtype", "Stable-Diffusion"),
                path=getattr(args, "path", ""),
            )
            _print_json(client.list_models(options))
            return 0
    except AssetClientError as exc:
        _err(f"Model query failed: {exc}")
        return 1
    finally:
        client.close()
    return 1


def _handle_status(args: argparse.Namespace) -> int:
    client = _make_client(args)
    try:
        status = client.server_status()
    except ServerUnreachableError as exc:
        _print_json(exc.status)
        _err(str(exc))
        return 1
    finally:
        client.close()
    _print_json(status)
    return 0


def _handle_cancel(args: argparse.Namespace) -> int:
    client = _make_client(args)
    try:
        if args.all:
            client.interrupt_all()
        else:
            client.interrupt()
    except AssetClientError as exc:
        _err(f"Cancel failed: {exc}")
        return 1
    finally:
        client.close()
    if not args.quiet:
        _err("All queued generations cancelled" if args.all else "Current generation cancelled")
    return 0


def _check_outputs(args: argparse.Namespace) -> str | None:
    if len(args.files) > 1 and args.output:
        return "--output can only be used with a single input file"
    if args.output and args.in_place:
        return "cannot use both --output and --in-place"
    if not 1 <= args.quality <= 100:
        return "quality must be between 1 and 100"
    return None


def _handle_crop(args: argparse.Namespace) -> int:
    problem = _check_outputs(args)
    options = CropOptions(
        threshold=args.threshold,
        tolerance=args.tolerance,
        jpeg_quality=args.quality,
        preserve_aspect_ratio=args.preserve_aspect,
    )
    try:
        options.validate()
    except ProcessingError as exc:
        problem = problem or str(exc)
    if problem:
        _err(problem)
        return 2

    results: list[dict[str, Any]] = []
    failed = 0
    for name in args.files:
        source = Path(name)
        if not source.exists():
            _err(f"Error: file not found: {source}")
            failed += 1
            continue
        # A lone file without --output is cropped in place.
        if args.in_place or (not args.output and len(args.files) == 1):
            target = source
        elif args.output:
            target = Path(args.output)
        else:
            target = source.with_name(f"{source.stem}-cropped{source.suffix}")
        try:
            if target == source:
                bounds = auto_crop_in_place(source, options)
            else:
                bounds = auto_crop(source, target, options)
            width, height = image_dimensions(target)
        except ProcessingError as exc:
            _err(f"Error cropping {source}: {exc}")
            failed += 1
            continue
        results.append(
            {"input": str(source), "output": str(target), "bounds": asdict(bounds), "size": [width, height]}
        )

    _print_json(results)
    if failed:
        _err(f"failed to crop {failed} image(s)")
        return 1
    return 0


def _handle_downscale(args: argparse.Namespace) -> int:
    problem = _check_outputs(args)
    if args.percentage > 0 and (args.width > 0 or args.height > 0):
        problem = problem or "cannot specify both --percentage and explicit dimensions (--width/--height)"
    options = ResizeOptions(
        width=args.width,
        height=args.height,
        percentage=args.percentage,
        filter=args.filter,
        jpeg_quality=args.quality,
    )
    try:
        options.validate()
    except ProcessingError as exc:
        problem = problem or str(exc)
    if problem:
        _err(problem)
        return 2

    results: list[dict[str, Any]] = []
    failed = 0
    for name in args.files:
        source = Path(name)
        if not source.exists():
            _err(f"Error: file not found: {source}")
            failed += 1
            continue
        if args.in_place:
            target = source
        elif args.output:
            target = Path(args.output)
        else:
            target = source.with_name(f"{source.stem}_downscaled{source.suffix}")
        if args.verbose:
            _err(f"Processing: {source} -> {target}")
        try:
            if args.in_place:
                size = downscale_in_place(source, options)
            else:
                size = downscale(source, target, options)
        except ProcessingError as exc:
            _err(f"Error processing {source}: {exc}")
            failed += 1
            continue
        results.append({"input": str(source), "output": str(target), "size": list(size)})

    _print_json(results)
    if failed:
        _err(f"failed to downscale {failed} image(s)")
        return 1
    return 0


def main(argv: list[str] | None = None) -> None:
    load_dotenv()
    parser = _build_parser()
    args = parser.parse_args(argv)
    handlers = {
        "generate": _handle_generate,
        "models": _handle_models,
        "status": _handle_status,
        "cancel": _handle_cancel,
        "crop": _handle_crop,
        "downscale": _handle_downscale,
    }
    handler = handlers.get(args.command)
    if handler is None:
        parser.print_help()
        raise SystemExit(1)
    try:
        code = handler(args)
    except ValueError as exc:
        _err(str(exc))
        code = 2
    raise SystemExit(code)


if __name__ == "__main__":
    main()
