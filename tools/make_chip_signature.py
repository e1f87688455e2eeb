import sys
from chipverify.signature import scan_message
from chipverify.util import hmac_sha256_hex

def main(secret: str, tag_id: str, ctr: str):
    print(hmac_sha256_hex(secret, scan_message(tag_id, ctr)))

if __name__ == "__main__":
    if len(sys.argv) != 4:
        print("Usage: python tools/make_chip_signature.py <secret> <tag_id> <ctr>"); raise SystemExit(2)
    main(*sys.argv[1:])
