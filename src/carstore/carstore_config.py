"""Default configuration variables for CarStore"""

############### Remote Store ###############
# Default S3-compatible endpoint if no endpoint is provided
DEFAULT_ENDPOINT = "https://s3.filebase.com"
DEFAULT_REGION = "us-east-1"
# Path-style addressing (https://endpoint/bucket/key) instead of virtual hosts
FORCE_PATH_STYLE = True

############### Upload ###############
# Attempts per part before giving up
MAX_STORE_RETRIES = 5
# Parts in flight at the same time for a single upload
MAX_CONCURRENT_UPLOADS = 4
# Smallest part size accepted by S3 multipart uploads (except the last part)
PART_SIZE = 5 * 1024 * 1024
# Seconds the upload coordinator waits for a part before draining progress again
PROGRESS_POLL_INTERVAL = 0.05

############### DAG Layout ###############
# Fixed chunk size used when splitting file content into leaves
CHUNK_SIZE = 262144
# Maximum number of links per intermediate file node (balanced layout)
MAX_CHILDREN = 174
# CIDv0 (base58btc, dag-pb, sha2-256) unless CIDv1 is requested
CID_VERSION = 0
HASH_FUNCTION = "sha2-256"

############### Block Store ###############
# Sharding of a block's digest when written to disk by FsBlockStore
# Example (depth 2, width 2):
#    /tmp/carstore-xxxx/blocks
#    ├── 7f
#    │   └── 5c
#    │       └── c18f0b04e812a3b4c8f686ce34e6fec558804bf61e54b176742a7f6368d6
BLOCKSTORE_DEPTH = 2
BLOCKSTORE_WIDTH = 2

############### Token Metadata ###############
URL_SCHEME = "ipfs"
DEFAULT_GATEWAY = "https://ipfs.io"
# Directory under which token resources are placed inside the archive
RESOURCE_NAMESPACE = "assets"
METADATA_FILE_NAME = "metadata.json"
