from __future__ import annotations

import argparse

from dotenv import load_dotenv

from studio.cloudinary import CloudinaryClient
from studio.contracts import Placement


def main() -> int:
    load_dotenv()

    parser = argparse.ArgumentParser(description="Print an instant Cloudinary positioning preview URL.")
    parser.add_argument("--backdrop-id", required=True, type=str, help="Public id of the uploaded backdrop.")
    parser.add_argument("--subject-id", required=True, type=str, help="Public id of the uploaded cutout.")
    parser.add_argument("--x", type=float, default=0.5)
    parser.add_argument("--y", type=float, default=0.5)
    parser.add_argument("--scale", type=float, default=0.5)
    parser.add_argument("--blur", action="store_true", help="Preview with the backdrop blurred.")
    parser.add_argument("--cloud-name", type=str, default=None, help="Overrides CLOUDINARY_CLOUD_NAME.")
    args = parser.parse_args()

    client = CloudinaryClient(cloud_name=args.cloud_name)
    placement = Placement.clamped(args.x, args.y, args.scale)
    print(client.preview_url(args.backdrop_id, args.subject_id, placement, blur=args.blur))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
