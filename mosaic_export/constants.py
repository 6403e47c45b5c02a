# constants.py

DEFAULT_SCAN_DOWNSAMPLE = 32.0
DEFAULT_MATCHED_PERCENTILE = 0.1

DISCRETE_BINS_8BIT = 256
DISCRETE_BINS_16BIT = 65536
FLOAT_HISTOGRAM_BINS = 10000

# Used when OME metadata carries no channel colour (packed 0xRRGGBB)
DEFAULT_CHANNEL_COLORS = [
    0x0000FF,
    0x00FF00,
    0xFF0000,
    0xFF00FF,
    0x00FFFF,
    0xFFFF00,
    0xFFA500,
    0xFFFFFF,
]

INVALID_FILENAME_CHARS = '<>:"/\\|?*'
