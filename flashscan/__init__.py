# flashscan: Fake-capacity flash image analysis (read-only)
# Pure-Python boundary search and wrap/alias detection over raw images.
#
# Architecture (bottom → top):
#   errors      : ConfigurationError / ImageIOError / NotFoundError / ...
#   mmap_reader : Read-only mmap range reads, backward block iteration
#   geometry    : Size profiles, block/sample/tail sizes, candidates
#   padding     : Pad classifier + rightmost-non-pad pattern matchers
#   hashing     : Per-block content hashing (blake3 / sha256)
#   boundary    : Last non-pad block search (3 strategies) + refinement
#   alias       : Duplicate blocks, tail-vs-candidate comparison, tiers
#   extract     : Trimmed / last-sector / boundary-pair output files
#   imagegen    : Synthetic images with a known boundary (test fixtures)

__version__ = "0.3.0"
