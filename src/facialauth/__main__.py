"""
Entry point for running facialauth as a module.

Usage:
    python -m facialauth capture -u alice
    python -m facialauth train -u alice
    python -m facialauth test -u alice
    python -m facialauth --config /path/to/pam_facial.yaml test -u alice

The exit status of ``test`` is the host-facing result (suitable for
pam_exec): 0 authenticated, 1 denied or timed out, 2 error, 3 ignore this
factor (missing model with ``auth.missing_model: defer``).
"""

import argparse
import logging
import shutil
import sys
from pathlib import Path

from facialauth.camera import capture_images, open_camera
from facialauth.config import AuthSettings, Settings
from facialauth.engine import Decision, FailureReason, Outcome, decide
from facialauth.errors import (
    ConfigError,
    FacialAuthError,
    InsufficientData,
    ModelExistsError,
    ResourceError,
)
from facialauth.extractors import create_extractor
from facialauth.training import train_user

DEFAULT_CONFIG = Path("/etc/security/pam_facial.yaml")

EXIT_SUCCESS = 0
EXIT_DENIED = 1
EXIT_ERROR = 2
EXIT_IGNORE = 3

METHODS = ["classic_lbph", "classic_eigen", "classic_fisher", "embedding_similarity"]

logger = logging.getLogger(__name__)


def exit_code_for(decision: Decision, settings: Settings) -> int:
    """Map a decision onto the host-facing exit status."""
    if decision.outcome is Outcome.SUCCESS:
        return EXIT_SUCCESS
    if (
        decision.reason is FailureReason.MODEL_MISSING
        and settings.auth.missing_model == "defer"
    ):
        return EXIT_IGNORE
    if decision.outcome is Outcome.ERROR:
        return EXIT_ERROR
    return EXIT_DENIED


def _override_auth(settings: Settings, **updates) -> Settings:
    """Return settings with validated overrides applied to the auth section."""
    updates = {k: v for k, v in updates.items() if v is not None}
    if not updates:
        return settings
    try:
        auth = AuthSettings(**{**settings.auth.model_dump(), **updates})
    except ValueError as e:
        raise ConfigError(f"Invalid override: {e}") from e
    return settings.model_copy(update={"auth": auth})


def cmd_capture(args: argparse.Namespace, settings: Settings) -> int:
    user_dir = settings.user_image_dir(args.user)

    if args.flush:
        if user_dir.exists():
            shutil.rmtree(user_dir)
            logger.info(f"Removed directory: {user_dir}")
        else:
            logger.info(f"Directory not found: {user_dir}")
        return EXIT_SUCCESS

    count = args.num_images or settings.camera.capture_count
    extractor = create_extractor(settings.auth.method, settings.extractor)
    with open_camera(settings.camera) as source:
        saved = capture_images(
            source,
            extractor,
            user_dir,
            count=count,
            delay_ms=settings.camera.capture_delay_ms,
            force=args.force,
        )

    print(f"Captured {len(saved)} image(s) into {user_dir}")
    return EXIT_SUCCESS if len(saved) == count else EXIT_DENIED


def cmd_train(args: argparse.Namespace, settings: Settings) -> int:
    settings = _override_auth(settings, method=args.method)
    try:
        model = train_user(
            settings,
            args.user,
            image_dir=args.image_dir,
            output=args.output,
            force=args.force,
        )
    except (ModelExistsError, InsufficientData, FileNotFoundError) as e:
        logger.error(f"Training failed for {args.user}: {e}")
        return EXIT_DENIED

    print(
        f"Trained {model.algorithm} model for {args.user} "
        f"({len(model.label_set)} label(s))"
    )
    return EXIT_SUCCESS


def cmd_test(args: argparse.Namespace, settings: Settings) -> int:
    settings = _override_auth(settings, threshold=args.threshold)
    model_path = Path(args.model) if args.model else settings.user_model_path(args.user)

    if not model_path.is_file():
        logger.warning(f"No model found at {model_path}")
        decision = Decision.failure(FailureReason.MODEL_MISSING, detail=f"No model at {model_path}")
    else:
        extractor = create_extractor(settings.auth.method, settings.extractor)
        try:
            with open_camera(settings.camera) as source:
                decision = decide(
                    settings.auth, source, extractor, model_path, expected_label=args.user
                )
        except ResourceError as e:
            logger.error(f"Camera unavailable: {e}")
            decision = Decision.error(str(e))

    score = f"{decision.score:.4f}" if decision.score is not None else "n/a"
    print(
        f"{decision.outcome.value}: user={args.user} method={settings.auth.method} "
        f"score={score} threshold={settings.auth.effective_threshold} "
        f"frames={decision.frames}"
    )
    return exit_code_for(decision, settings)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="facialauth",
        description="Face recognition as an authentication factor",
    )
    parser.add_argument(
        "--config",
        "-c",
        type=Path,
        default=DEFAULT_CONFIG,
        help=f"Path to configuration file (default: {DEFAULT_CONFIG})",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable debug logging",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    capture = sub.add_parser("capture", help="Capture enrollment images from the camera")
    capture.add_argument("-u", "--user", required=True, help="User to capture images for")
    capture.add_argument("-n", "--num-images", type=int, help="Number of images to capture")
    capture.add_argument(
        "-f", "--force", action="store_true", help="Overwrite existing images, restart from 1"
    )
    capture.add_argument(
        "--flush", action="store_true", help="Delete all images of the user and exit"
    )
    capture.set_defaults(func=cmd_capture)

    train = sub.add_parser("train", help="Train and save a user's model")
    train.add_argument("-u", "--user", required=True, help="User to train the model for")
    train.add_argument(
        "-m",
        "--method",
        choices=METHODS,
        help="Recognition method (classic_fisher needs 2+ labels and so cannot train one user)",
    )
    train.add_argument("-o", "--output", type=Path, help="Path to save the trained model")
    train.add_argument(
        "-f", "--force", action="store_true", help="Overwrite an existing model file"
    )
    train.add_argument(
        "image_dir", nargs="?", type=Path, help="Training images (default: basedir/images/<user>)"
    )
    train.set_defaults(func=cmd_train)

    test = sub.add_parser("test", help="Authenticate a user against the camera")
    test.add_argument("-u", "--user", required=True, help="User to authenticate")
    test.add_argument("-m", "--model", type=Path, help="Model file (default: basedir/models/<user>.npz)")
    test.add_argument("--threshold", type=float, help="Override the match threshold")
    test.set_defaults(func=cmd_test)

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    # Load and validate configuration
    try:
        settings = Settings.from_yaml(args.config)
    except FileNotFoundError:
        print(f"Error: Configuration file not found: {args.config}", file=sys.stderr)
        return EXIT_ERROR
    except ConfigError as e:
        print(f"Error: Invalid configuration: {e}", file=sys.stderr)
        return EXIT_ERROR

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else getattr(logging, settings.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        return args.func(args, settings)
    except FacialAuthError as e:
        logger.error(f"{args.command} failed: {e}")
        return EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())
