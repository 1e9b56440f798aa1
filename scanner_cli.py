"""
Scanner CLI
Runs one capture session against a local camera or a set of replayed
images, waits for auto-capture and writes the confirmed scan to disk.

Usage:
    python scanner_cli.py --camera 0 --show
    python scanner_cli.py --images page1.jpg page2.jpg --output scans/
"""
import argparse
import asyncio
import logging
import os
import sys

import cv2

from error_handlers import ScannerError
from image_ops import VisionEngine
from layer1_capture import (
    CameraHandler,
    CaptureConfig,
    CaptureSession,
    FrameQualityEvaluator,
    SessionState,
    StaticFrameSource,
    render_overlay,
)
from layer2_image_enhancer import EnhancementConfig, ImageBridge

logger = logging.getLogger(__name__)

PREVIEW_WINDOW = "SHG Scanner"


def build_parser():
    parser = argparse.ArgumentParser(description="Scan an SHG record with auto-capture")
    source = parser.add_mutually_exclusive_group()
    source.add_argument('--camera', type=int, default=int(os.environ.get('CAMERA_INDEX', 0)),
                        help="Camera device index")
    source.add_argument('--images', nargs='+', help="Replay these image files instead of a camera")
    parser.add_argument('--output', default='.', help="Directory for the scanned JPEG")
    parser.add_argument('--timeout', type=float, default=15.0,
                        help="Seconds to wait for auto-capture before capturing manually")
    parser.add_argument('--orientation', type=int, default=0, choices=(0, 90, 180, 270),
                        help="Device orientation correction applied at capture")
    parser.add_argument('--rotate', type=int, default=0, choices=(0, 90, 180, 270),
                        help="Manual rotation applied before confirming")
    parser.add_argument('--binarize', action='store_true', help="Black-and-white scan look")
    parser.add_argument('--no-enhance', action='store_true', help="Skip background enhancement")
    parser.add_argument('--show', action='store_true', help="Show the live guidance overlay")
    return parser


def show_overlay(frame, points, report, progress):
    if frame is None:
        return
    cv2.imshow(PREVIEW_WINDOW, render_overlay(frame, points, report, progress))
    cv2.waitKey(1)


async def run(args) -> int:
    """
    Run one session to completion.

    Returns:
        int: Process exit code
    """
    camera = StaticFrameSource(args.images) if args.images else CameraHandler(camera_index=args.camera)

    engine = VisionEngine()
    evaluator = FrameQualityEvaluator(engine)
    session = CaptureSession(
        camera,
        evaluator,
        enhancer=ImageBridge(EnhancementConfig(enable_binarize=args.binarize)),
        config=CaptureConfig(
            enhance=not args.no_enhance,
            jpeg_quality=int(os.environ.get('JPEG_QUALITY', 95)),
        ),
        on_overlay=show_overlay if args.show else None,
    )
    session.set_device_orientation(args.orientation)

    try:
        if not await session.open():
            print(f"Error: {session.error.message}", file=sys.stderr)
            return 1

        try:
            await session.wait_for_review(timeout=args.timeout)
        except asyncio.TimeoutError:
            logger.warning(f"No steady document after {args.timeout:.0f}s, capturing manually "
                           f"(last guidance: {session.guidance})")
            if session.state is SessionState.SEARCHING:
                await session.capture()
            else:
                await session.wait_for_review()

        if session.state is SessionState.FAILED:
            print(f"Error: {session.error.message}", file=sys.stderr)
            return 1

        if args.rotate:
            session.rotate(args.rotate)

        await session.wait_for_enhancement()
        result = session.confirm()
        path = result.save(args.output)

        print(f"Saved {path} ({result.width}x{result.height}, enhanced={result.enhanced})")
        return 0

    except ScannerError as e:
        logger.error(f"{e.error_code}: {e.message}")
        print(f"Error: {e.message}", file=sys.stderr)
        return 1

    finally:
        session.close()
        if args.show:
            cv2.destroyAllWindows()


def main():
    args = build_parser().parse_args()

    logging.basicConfig(
        level=os.environ.get('LOG_LEVEL', 'INFO').upper(),
        format='%(asctime)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    sys.exit(asyncio.run(run(args)))


if __name__ == '__main__':
    main()
