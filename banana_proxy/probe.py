from __future__ import annotations

import argparse
import asyncio
import hashlib
import io
import os
import sys
import time
from pathlib import Path

from dotenv import load_dotenv
from PIL import Image

from banana_proxy.config import STRATEGIES, get_generation_strategy, get_reference_image_path, get_replicate_model
from banana_proxy.generation import (
    GenerationClient,
    GenerationConfigError,
    GenerationError,
    GenerationRequest,
    get_generation_client,
)
from banana_proxy.reference_image import encode_data_uri, load_reference_image

DEFAULT_PROMPT = "Place the subject on a sunny beach, photorealistic, no text."
DETAIL_LIMIT = 120


def mask_api_token(api_token: str) -> str:
    if len(api_token) <= 8:
        return "*" * len(api_token)
    return f"{api_token[:4]}...{api_token[-4:]}"


def fingerprint_api_token(api_token: str) -> str:
    return hashlib.sha256(api_token.encode("utf-8")).hexdigest()[:16]


def load_local_env(env_file: str) -> None:
    env_path = Path(env_file)
    if not env_path.is_absolute():
        env_path = Path(__file__).resolve().parents[1] / env_path
    if env_path.exists():
        load_dotenv(env_path, override=False)


def build_test_reference_png(size: int = 256) -> bytes:
    image = Image.new("RGB", (size, size))
    pixels = image.load()
    for y in range(size):
        for x in range(size):
            shade = int((x + y) / 2) % 256
            pixels[x, y] = (shade, shade, shade)

    with io.BytesIO() as buffer:
        image.save(buffer, format="PNG")
        return buffer.getvalue()


def resolve_reference_image(use_synthetic: bool) -> tuple[str, str]:
    reference_path = get_reference_image_path()
    if not use_synthetic and reference_path.is_file():
        return load_reference_image(reference_path), str(reference_path)
    return encode_data_uri(build_test_reference_png()), "synthetic gradient"


def shorten(detail: str) -> str:
    detail = " ".join(str(detail).split())
    if len(detail) > DETAIL_LIMIT:
        return detail[: DETAIL_LIMIT - 3] + "..."
    return detail


async def run_probe(client: GenerationClient, request: GenerationRequest) -> tuple[bool, int, str]:
    started = time.perf_counter()
    try:
        result = await client.generate(request)
    except GenerationError as error:
        latency_ms = int((time.perf_counter() - started) * 1000)
        status = getattr(error, "status_code", "-")
        detail = error.detail if error.detail is not None else error
        return False, latency_ms, f"status={status} type={type(error).__name__} detail={shorten(detail)}"
    latency_ms = int((time.perf_counter() - started) * 1000)
    return True, latency_ms, f"url={result.result_url}"


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Probe the Replicate API token by calling image generation one or more times.",
    )
    parser.add_argument(
        "--api-token",
        default="",
        help="Replicate API token. If omitted, read REPLICATE_API_TOKEN.",
    )
    parser.add_argument(
        "--attempts",
        type=int,
        default=1,
        help="Number of probe requests (default: 1).",
    )
    parser.add_argument(
        "--strategy",
        choices=list(STRATEGIES),
        default="",
        help="Generation strategy. Default: GENERATION_STRATEGY or poll.",
    )
    parser.add_argument(
        "--synthetic-image",
        action="store_true",
        help="Send a generated gradient instead of the configured reference image.",
    )
    parser.add_argument(
        "--env-file",
        default=".env",
        help="Environment file to load before reading the token.",
    )
    parser.add_argument(
        "--prompt",
        default=DEFAULT_PROMPT,
        help="Prompt text sent in each probe request.",
    )
    return parser.parse_args(argv)


async def run_probes(args: argparse.Namespace) -> int:
    if args.api_token.strip():
        os.environ["REPLICATE_API_TOKEN"] = args.api_token.strip()

    strategy = args.strategy or get_generation_strategy()
    try:
        client = get_generation_client(strategy)
    except GenerationConfigError:
        print("[error] Missing API token. Use --api-token or set REPLICATE_API_TOKEN.")
        return 2

    api_token = os.environ["REPLICATE_API_TOKEN"].strip()
    attempts = max(1, int(args.attempts))
    reference_image, reference_source = resolve_reference_image(args.synthetic_image)
    request = GenerationRequest(prompt=args.prompt, reference_image=reference_image)

    print(
        "[info] "
        f"model={get_replicate_model()} strategy={strategy} attempts={attempts} "
        f"reference={reference_source}"
    )
    print(f"[token] {mask_api_token(api_token)}({fingerprint_api_token(api_token)})")

    success_count = 0
    for index in range(1, attempts + 1):
        ok, latency_ms, detail = await run_probe(client, request)
        if ok:
            success_count += 1
            print(f"[{index}/{attempts}] OK {latency_ms}ms {detail}")
        else:
            print(f"[{index}/{attempts}] FAIL {latency_ms}ms {detail}")

    failure_count = attempts - success_count
    usable = success_count == attempts
    print(f"[summary] success={success_count} failure={failure_count} usable={str(usable).lower()}")
    return 0 if usable else 1


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    load_local_env(args.env_file)
    return asyncio.run(run_probes(args))


if __name__ == "__main__":
    sys.exit(main())
