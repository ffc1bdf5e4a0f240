from .regions import Region
from .sources import (
    RasterSource, ArraySource, HDF5RasterSource, GeoTIFFSource, StackedSource, open_source
)
from .writers import RasterWriter, ArrayWriter, HDF5Writer, GeoTIFFWriter, open_writer
