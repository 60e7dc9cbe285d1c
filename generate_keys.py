from pathlib import Path

from pcsp import crypto
from pcsp.run_server import write_key_files

# Quick one-off keygen for a fresh deployment.
# - dec-key.txt stays on the collector (modulus + private exponent).
# - enc-key.txt is flashed onto devices (modulus + public exponent).
# Both are hex byte strings, "<modulus> <exponent>".

dec_path = Path("dec-key.txt")
enc_path = Path("enc-key.txt")

if dec_path.exists():
    raise SystemExit(f"{dec_path} already exists; move it away first")

enc_key = write_key_files(dec_path, enc_path, key_size=2048)

print(f"Collector key written to {dec_path}, device key to {enc_path}")
print(f"Devices can seal {crypto.block_size(enc_key.modulus)} plaintext bytes per block.")
