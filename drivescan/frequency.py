"""
Channel number to frequency/band translation for GSM, UMTS, LTE and NR.

Every family is a table of non-overlapping channel ranges, each with a linear downlink formula:

    freq = base + step * (channel - start)

Adding a band is a matter of adding a row. Ranges that overlap (e.g. LTE band 66 sitting on top
of band 4, or NR n77 containing n78) can't be represented unambiguously so only one of each
overlapping pair is listed.
"""

from collections import namedtuple

BandRange = namedtuple('BandRange', ['start', 'end', 'base', 'step', 'name', 'bandLabel'])

TABLES = {
    'GSM': [
        BandRange(0, 124, 935.0, 0.2, 'GSM900', 'GSM900'),
        BandRange(128, 251, 869.2, 0.2, 'GSM850', 'GSM850'),
        BandRange(512, 885, 1805.2, 0.2, 'DCS1800', 'DCS1800'),
        BandRange(975, 1023, 925.2, 0.2, 'E-GSM900', 'E-GSM900'),
    ],
    'UMTS': [
        BandRange(1162, 1513, 1807.4, 0.2, 'Band III', 'Band III (1800 MHz)'),
        BandRange(2937, 3088, 927.4, 0.2, 'Band VIII', 'Band VIII (900 MHz)'),
        BandRange(4357, 4458, 871.4, 0.2, 'Band V', 'Band V (850 MHz)'),
        BandRange(9662, 9938, 1932.4, 0.2, 'Band II', 'Band II (1900 MHz)'),
        BandRange(10562, 10838, 2112.4, 0.2, 'Band I', 'Band I (2100 MHz)'),
    ],
    'LTE': [
        BandRange(0, 599, 2110.0, 0.1, 'Band 1', 'Band 1 (2100 MHz)'),
        BandRange(600, 1199, 1930.0, 0.1, 'Band 2', 'Band 2 (1900 MHz)'),
        BandRange(1200, 1949, 1805.0, 0.1, 'Band 3', 'Band 3 (1800 MHz)'),
        BandRange(1950, 2399, 2110.0, 0.1, 'Band 4', 'Band 4 (1700/2100 MHz)'),
        BandRange(2400, 2649, 869.0, 0.1, 'Band 5', 'Band 5 (850 MHz)'),
        BandRange(2750, 3449, 2620.0, 0.1, 'Band 7', 'Band 7 (2600 MHz)'),
        BandRange(3450, 3799, 925.0, 0.1, 'Band 8', 'Band 8 (900 MHz)'),
        BandRange(5010, 5179, 729.0, 0.1, 'Band 12', 'Band 12 (700 MHz)'),
        BandRange(5180, 5279, 746.0, 0.1, 'Band 13', 'Band 13 (700 MHz)'),
        BandRange(5280, 5379, 758.0, 0.1, 'Band 14', 'Band 14 (700 MHz)'),
        BandRange(5730, 5849, 734.0, 0.1, 'Band 17', 'Band 17 (700 MHz)'),
        BandRange(6150, 6449, 791.0, 0.1, 'Band 20', 'Band 20 (800 MHz)'),
        BandRange(8040, 8689, 1930.0, 0.1, 'Band 25', 'Band 25 (1900 MHz)'),
        BandRange(8690, 9039, 859.0, 0.1, 'Band 26', 'Band 26 (850 MHz)'),
        BandRange(9210, 9659, 758.0, 0.1, 'Band 28', 'Band 28 (700 MHz)'),
        BandRange(37750, 38249, 2570.0, 0.1, 'Band 38', 'Band 38 (2600 MHz)'),
        BandRange(38650, 39649, 2300.0, 0.1, 'Band 40', 'Band 40 (2300 MHz)'),
        BandRange(39650, 41589, 2496.0, 0.1, 'Band 41', 'Band 41 (2500 MHz)'),
        BandRange(66436, 67335, 2110.0, 0.1, 'Band 66', 'Band 66 (1700/2100 MHz)'),
        BandRange(68586, 68935, 617.0, 0.1, 'Band 71', 'Band 71 (600 MHz)'),
    ],
    # NR-ARFCN uses the global raster: 5 kHz steps below 3 GHz, 15 kHz up to 24.25 GHz and 60 kHz
    # above that.
    'NR': [
        BandRange(123400, 130400, 617.0, 0.005, 'n71', 'n71 (600 MHz)'),
        BandRange(151600, 160600, 758.0, 0.005, 'n28', 'n28 (700 MHz)'),
        BandRange(173800, 178800, 869.0, 0.005, 'n5', 'n5 (850 MHz)'),
        BandRange(185000, 192000, 925.0, 0.005, 'n8', 'n8 (900 MHz)'),
        BandRange(361000, 376000, 1805.0, 0.005, 'n3', 'n3 (1800 MHz)'),
        BandRange(386000, 398000, 1930.0, 0.005, 'n2', 'n2 (1900 MHz)'),
        BandRange(422000, 434000, 2110.0, 0.005, 'n1', 'n1 (2100 MHz)'),
        BandRange(499200, 537999, 2496.0, 0.005, 'n41', 'n41 (2500 MHz)'),
        BandRange(620000, 653333, 3300.0, 0.015, 'n78', 'n78 (3500 MHz)'),
        BandRange(693334, 733333, 4400.01, 0.015, 'n79', 'n79 (4700 MHz)'),
        BandRange(2016667, 2070832, 24250.08, 0.06, 'n258', 'n258 (26 GHz)'),
    ],
}

def checkTable(family, table):
    previous = None
    for band in table:
        if band.end < band.start:
            raise ValueError(f"{family} {band.name}: range ends before it starts")
        if previous is not None and band.start <= previous.end:
            raise ValueError(f"{family} {band.name} overlaps or is out of order with {previous.name}")
        previous = band

for _family, _table in TABLES.items():
    checkTable(_family, _table)

def findRange(family, channel):
    """Return the BandRange containing channel, or None."""
    for band in TABLES[family]:
        if band.start <= channel <= band.end:
            return band
        if channel < band.start:
            # Tables are sorted so there's no point looking further
            break
    return None

def frequencyMhz(family, channel):
    band = findRange(family, channel)
    if band is None:
        return None
    return round(band.base + band.step * (channel - band.start), 3)

def formatMhz(value):
    return f"{value:.3f}".rstrip('0').rstrip('.')

def lookup(family, channel):
    """
    Returns (frequencyLabel, bandLabel) for a channel, e.g. ('1815 MHz (Band 3)', 'Band 3 (1800 MHz)').
    Channels outside every known range never raise, they come back as '<channel> (Unknown band)'.
    """
    band = findRange(family, channel)
    if band is None:
        return f"{channel} (Unknown band)", f"Unknown {family} Band"
    freq = band.base + band.step * (channel - band.start)
    return f"{formatMhz(freq)} MHz ({band.name})", band.bandLabel
