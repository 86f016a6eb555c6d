#!/usr/bin/env python3
"""
Virtual try-on CLI.

Runs the pipeline directly against local image files, using the same
settings and storage as the HTTP service.
"""

import argparse
import asyncio
import json
import mimetypes
import os
import sys
from pathlib import Path

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from config import get_settings  # noqa: E402
from schemas.tryon import GarmentItem, ImageData, RequestOptions, TryOnOptions  # noqa: E402
from services.errors import TryOnError  # noqa: E402
from services.image_validation import decode_image_input, to_data_url  # noqa: E402
from services.tryon_pipeline import TryOnPipeline, build_pipeline  # noqa: E402


class Colors:
    """ANSI colors for terminal"""

    RESET = "\033[0m"
    BOLD = "\033[1m"
    RED = "\033[91m"
    GREEN = "\033[92m"
    YELLOW = "\033[93m"
    BLUE = "\033[94m"
    CYAN = "\033[96m"


def info(msg):
    print(f"{Colors.BLUE}[INFO]{Colors.RESET} {msg}")


def success(msg):
    print(f"{Colors.GREEN}[OK]{Colors.RESET} {msg}")


def warn(msg):
    print(f"{Colors.YELLOW}[WARN]{Colors.RESET} {msg}")


def error(msg):
    print(f"{Colors.RED}[ERROR]{Colors.RESET} {msg}")


def _read_image(path: str) -> str:
    file_path = Path(path)
    if not file_path.is_file():
        raise FileNotFoundError(f"Image not found: {path}")
    mime_type = mimetypes.guess_type(file_path.name)[0] or "image/jpeg"
    return to_data_url(file_path.read_bytes(), mime_type)


def _write_image(data_url: str, out_path: str) -> None:
    content, _ = decode_image_input(data_url)
    Path(out_path).write_bytes(content)


def _print_json(payload) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False))


async def cmd_register_photo(pipeline: TryOnPipeline, args) -> int:
    photo = await pipeline.register_photo(_read_image(args.image), filename=Path(args.image).name)
    success(f"Registered subject photo {photo.id} ({photo.mime_type})")
    return 0


async def cmd_detect(pipeline: TryOnPipeline, args) -> int:
    data_url = _read_image(args.image)
    options = RequestOptions(category=args.category, auto_try_on=False)
    response = await pipeline.process_image(ImageData(base64=data_url), options)
    if response.detection_data is not None:
        _print_json(response.detection_data.model_dump(mode="json", by_alias=True))
    if response.message:
        info(response.message)
    return 0 if response.success else 1


async def cmd_tryon(pipeline: TryOnPipeline, args) -> int:
    photo_id = args.photo_id
    if not photo_id:
        photo = await pipeline.repository.latest_photo()
        if photo is None:
            error("No subject photo registered. Run 'register-photo' first.")
            return 1
        photo_id = photo.id

    garment = GarmentItem(
        image=_read_image(args.garment),
        category=args.category or "clothing",
        description=args.description or "",
    )
    options = TryOnOptions(high_quality=args.high_quality, enhance_quality=args.enhance)
    result = await pipeline.generate_try_on(photo_id, garment, options)

    if result.is_synthetic:
        warn("Generation unavailable; produced a synthetic placeholder result")
    else:
        success(f"Try-on {result.id} generated ({result.processing_method.value})")
    info(f"Confidence {result.confidence:.2f}, quality {result.quality_score:.2f}")
    if result.description:
        print(f"\n{Colors.BOLD}{result.description}{Colors.RESET}")
    for recommendation in result.recommendations:
        print(f"  - {recommendation}")
    if args.out and result.generated_image:
        _write_image(result.generated_image, args.out)
        success(f"Wrote {args.out}")
    return 0


async def cmd_refine(pipeline: TryOnPipeline, args) -> int:
    result = await pipeline.refine(args.result_id, args.instruction)
    success(f"Refined {result.id} ({len(result.refinement_history)} refinements)")
    if args.out and result.generated_image:
        _write_image(result.generated_image, args.out)
        success(f"Wrote {args.out}")
    return 0


async def cmd_results(pipeline: TryOnPipeline, args) -> int:
    results = await pipeline.repository.list_results(args.limit)
    if not results:
        info("No stored results")
    for result in results:
        print(
            f"{Colors.CYAN}{result.id}{Colors.RESET} "
            f"{result.garment_item.category.value:<12} "
            f"{result.processing_method.value:<30} "
            f"q={result.quality_score:.2f}"
        )
    return 0


async def cmd_usage(pipeline: TryOnPipeline, args) -> int:
    stats = await pipeline.usage.get_stats()
    _print_json(stats.model_dump(mode="json", by_alias=True))
    return 0


async def cmd_stats(pipeline: TryOnPipeline, args) -> int:
    _print_json(pipeline.get_processing_stats().model_dump(mode="json", by_alias=True))
    return 0


async def cmd_check(pipeline: TryOnPipeline, args) -> int:
    if pipeline.orchestrator is None:
        warn("GOOGLE_API_KEY not configured")
        return 1
    if await pipeline.orchestrator.test_connection():
        success("Gemini API reachable")
        return 0
    error("Gemini API connection failed")
    return 1


COMMANDS = {
    "register-photo": cmd_register_photo,
    "detect": cmd_detect,
    "tryon": cmd_tryon,
    "refine": cmd_refine,
    "results": cmd_results,
    "usage": cmd_usage,
    "stats": cmd_stats,
    "check": cmd_check,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tryon", description="Virtual try-on generation from the command line"
    )
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Start the HTTP service")
    serve.add_argument("--host", default=None)
    serve.add_argument("--port", type=int, default=None)

    photo = sub.add_parser("register-photo", help="Register a subject photo")
    photo.add_argument("image")

    detect = sub.add_parser("detect", help="Detect garments in an image")
    detect.add_argument("image")
    detect.add_argument("--category", default=None)

    tryon = sub.add_parser("tryon", help="Generate a try-on from a garment image")
    tryon.add_argument("garment")
    tryon.add_argument("--category", default=None)
    tryon.add_argument("--description", default=None)
    tryon.add_argument("--photo-id", default=None)
    tryon.add_argument("--high-quality", action="store_true")
    tryon.add_argument("--enhance", action="store_true")
    tryon.add_argument("--out", default=None, help="Write the generated image here")

    refine = sub.add_parser("refine", help="Refine a stored result")
    refine.add_argument("result_id")
    refine.add_argument("instruction")
    refine.add_argument("--out", default=None)

    results = sub.add_parser("results", help="List stored results")
    results.add_argument("--limit", type=int, default=20)

    sub.add_parser("usage", help="Show usage counters")
    sub.add_parser("stats", help="Show pipeline capabilities")
    sub.add_parser("check", help="Test the Gemini API connection")
    return parser


async def run_command(args) -> int:
    pipeline = build_pipeline(get_settings())
    try:
        return await COMMANDS[args.command](pipeline, args)
    except TryOnError as exc:
        error(f"{type(exc).__name__}: {exc.message}")
        return 2
    except FileNotFoundError as exc:
        error(str(exc))
        return 2


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    if args.command == "serve":
        import uvicorn

        settings = get_settings()
        uvicorn.run(
            "main:app",
            host=args.host or settings.HOST,
            port=args.port or settings.PORT,
        )
        return 0

    return asyncio.run(run_command(args))


if __name__ == "__main__":
    sys.exit(main())
