"""Simple example: decrypt an AES-128 HLS stream served from memory, or a real one by URL."""
import logging
import sys
from pathlib import Path

from vodstream.encryption.symmetric import aes_cbc_encrypt, generate_symmetric_key
from vodstream.fetch.http import HttpFetcher
from vodstream.keys.resolver import implicit_iv
from vodstream.session import PlaybackSession
from vodstream.config import load_config
from vodstream.utils.media_io import write_stream

BASE = "https://cdn.example.com/demo/"


def build_demo_stream(segments=4):
	"""Return (playlist text, resources, expected plaintext) for a small encrypted stream."""
	key = generate_symmetric_key()
	resources = {BASE + "key.bin": key}
	lines = ["#EXTM3U", "#EXT-X-TARGETDURATION:6", "#EXT-X-MEDIA-SEQUENCE:0", '#EXT-X-KEY:METHOD=AES-128,URI="key.bin"']
	plaintext = b""
	for sequence in range(segments):
		data = f"segment {sequence} payload ".encode() * 20
		plaintext += data
		_, resources[BASE + f"seg{sequence}.ts"] = aes_cbc_encrypt(data, key, implicit_iv(sequence))
		lines += ["#EXTINF:6.0,", f"seg{sequence}.ts"]
	lines.append("#EXT-X-ENDLIST")
	return "\n".join(lines) + "\n", resources, plaintext


def demo():
	text, resources, expected = build_demo_stream()

	def fetch(locator, timeout=None):
		return resources[locator.uri]

	out = Path("demo_stream.ts")
	with PlaybackSession(fetch, load_config()) as session:
		written = write_stream(session.open(text, BASE + "index.m3u8"), out)

	print("Decrypted", written, "bytes, roundtrip ok:", out.read_bytes() == expected)


def decrypt_url(playlist_url, output):
	"""Download and decrypt a media playlist over HTTP."""
	with HttpFetcher() as fetch:
		response = fetch.session.get(playlist_url, timeout=30)
		response.raise_for_status()
		with PlaybackSession(fetch, load_config()) as session:
			written = write_stream(session.open(response.text, response.url), output)
	print("Wrote", written, "bytes to", output)


if __name__ == "__main__":
	logging.basicConfig(level=logging.INFO)
	if len(sys.argv) == 3:
		decrypt_url(sys.argv[1], sys.argv[2])
	else:
		demo()
