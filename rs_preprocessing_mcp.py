#!/usr/bin/env python3
"""
MCP Server for remote-sensing preprocessing.

This server exposes the rs_preprocessing library to agents: planning
compositing intervals, listing spectral indices, mosaicking GeoTIFF tiles
(optionally one mosaic per year) and running Earth Engine time-series
exports from a configuration file.
"""

import json
import os
import sys
from enum import Enum
from typing import List, Optional

from fastmcp import FastMCP
from pydantic import BaseModel, ConfigDict, Field, field_validator

from rs_preprocessing import earth_engine, mosaic as mosaic_utils
from rs_preprocessing.config import load_config
from rs_preprocessing.dates import UNIT_ALIASES, make_intervals, parse_date
from rs_preprocessing.errors import (
    ConfigurationError, EmptyResultError, ExternalServiceError
)
from rs_preprocessing.indices import INDEX_DEFINITIONS
from rs_preprocessing.logging_utils import setup_logging
from rs_preprocessing.pipeline import run_ee_time_series

# Initialize the MCP server
mcp = FastMCP("rs_preprocessing_mcp")

CHARACTER_LIMIT = 25000  # Maximum response size in characters


# ============================================================================
# ENUMS
# ============================================================================

class ResponseFormat(str, Enum):
    """Output format for tool responses."""
    JSON = "json"
    MARKDOWN = "markdown"


class MosaicFunction(str, Enum):
    """Aggregation for overlapping tile pixels."""
    MEAN = "mean"
    SUM = "sum"
    MIN = "min"
    MAX = "max"
    MEDIAN = "median"
    FIRST = "first"
    LAST = "last"


class UnmatchedPolicy(str, Enum):
    """Handling of tiles without a '_YYYY-' year token."""
    WARN = "warn"
    IGNORE = "ignore"
    ERROR = "error"


# ============================================================================
# PYDANTIC MODELS FOR INPUT VALIDATION
# ============================================================================

class GenerateIntervalsInput(BaseModel):
    """Input model for planning compositing intervals."""
    model_config = ConfigDict(
        str_strip_whitespace=True,
        validate_assignment=True,
        extra='forbid'
    )

    start_date: str = Field(
        ...,
        description="First interval start in YYYY-MM-DD format (e.g., '2001-06-01')",
        pattern=r'^\d{4}-\d{2}-\d{2}$'
    )
    end_date: str = Field(
        ...,
        description="Last allowed interval start in YYYY-MM-DD format (e.g., '2005-06-01')",
        pattern=r'^\d{4}-\d{2}-\d{2}$'
    )
    step: int = Field(
        default=1,
        description="Cadence between interval starts (e.g., 1, 2, 6)",
        ge=1,
        le=1000
    )
    unit: str = Field(
        default='years',
        description="Cadence unit: 'days', 'weeks', 'months' or 'years'"
    )
    window: int = Field(
        default=121,
        description="Window length of each interval (e.g., 121 for a June-September season)",
        ge=1,
        le=3660
    )
    window_unit: str = Field(
        default='days',
        description="Window unit: 'days', 'weeks', 'months' or 'years'"
    )
    response_format: ResponseFormat = Field(
        default=ResponseFormat.MARKDOWN,
        description="Output format: 'markdown' for human-readable or 'json' for machine-readable"
    )

    @field_validator('unit', 'window_unit')
    @classmethod
    def validate_unit(cls, v: str) -> str:
        if v.lower() not in UNIT_ALIASES:
            raise ValueError(f"Unknown unit '{v}'. Use days, weeks, months or years")
        return UNIT_ALIASES[v.lower()]

    @field_validator('end_date')
    @classmethod
    def validate_date_range(cls, v: str, info) -> str:
        """Ensure end_date is not before start_date."""
        if 'start_date' in info.data:
            if parse_date(v) < parse_date(info.data['start_date']):
                raise ValueError("end_date must not be before start_date")
        return v


class ListIndicesInput(BaseModel):
    """Input model for listing spectral indices."""
    model_config = ConfigDict(
        str_strip_whitespace=True,
        validate_assignment=True,
        extra='forbid'
    )

    sensor: Optional[str] = Field(
        default=None,
        description="Only list indices available for this sensor: 'landsat', 'sentinel2' or 'modis'"
    )
    response_format: ResponseFormat = Field(
        default=ResponseFormat.MARKDOWN,
        description="Output format: 'markdown' for human-readable or 'json' for machine-readable"
    )


class MosaicTilesInput(BaseModel):
    """Input model for mosaicking tiles into one GeoTIFF."""
    model_config = ConfigDict(
        str_strip_whitespace=True,
        validate_assignment=True,
        extra='forbid'
    )

    tile_files: Optional[List[str]] = Field(
        default=None,
        description="GeoTIFF tiles to mosaic (e.g., ['tiles/a.tif', 'tiles/b.tif'])"
    )
    input_dir: Optional[str] = Field(
        default=None,
        description="Directory searched recursively for .tif tiles, used when tile_files is not given"
    )
    output_path: str = Field(
        ...,
        description="Path of the mosaic GeoTIFF (e.g., './mosaics/mosaic.tif')",
        min_length=1
    )
    fun: MosaicFunction = Field(
        default=MosaicFunction.MEAN,
        description="Aggregation for overlapping pixels"
    )

    @field_validator('tile_files')
    @classmethod
    def validate_paths_exist(cls, v: Optional[List[str]]) -> Optional[List[str]]:
        """Ensure all input files exist."""
        for path in v or []:
            if not os.path.exists(path):
                raise ValueError(f"Tile file not found: {path}")
        return v


class MosaicByYearInput(BaseModel):
    """Input model for year-grouped mosaics."""
    model_config = ConfigDict(
        str_strip_whitespace=True,
        validate_assignment=True,
        extra='forbid'
    )

    input_dir: str = Field(
        ...,
        description="Directory searched recursively for tiles named like 'tile_2019-06-01.tif'",
        min_length=1
    )
    output_dir: str = Field(
        ...,
        description="Directory for the <prefix><year>.tif outputs (e.g., './mosaics')",
        min_length=1
    )
    fun: MosaicFunction = Field(
        default=MosaicFunction.MEAN,
        description="Aggregation for overlapping pixels"
    )
    prefix: str = Field(
        default='mosaic_',
        description="Output file name prefix (default: 'mosaic_')"
    )
    workers: int = Field(
        default=1,
        description="Worker processes, one year per task (e.g., 1, 4)",
        ge=1,
        le=64
    )
    on_unmatched: UnmatchedPolicy = Field(
        default=UnmatchedPolicy.WARN,
        description="Tiles without a year token: 'warn', 'ignore' or 'error'"
    )
    response_format: ResponseFormat = Field(
        default=ResponseFormat.MARKDOWN,
        description="Output format: 'markdown' for human-readable or 'json' for machine-readable"
    )

    @field_validator('input_dir')
    @classmethod
    def validate_input_exists(cls, v: str) -> str:
        """Ensure the input directory exists."""
        if not os.path.isdir(v):
            raise ValueError(f"Input directory not found: {v}")
        return v


class ExportTimeSeriesInput(BaseModel):
    """Input model for Earth Engine time-series exports."""
    model_config = ConfigDict(
        str_strip_whitespace=True,
        validate_assignment=True,
        extra='forbid'
    )

    config_path: str = Field(
        ...,
        description="YAML or JSON pipeline configuration (e.g., './configs/alberta_2001_2005.yaml')",
        min_length=1
    )
    project: Optional[str] = Field(
        default=None,
        description="Google Cloud project used to initialize Earth Engine"
    )
    submit: bool = Field(
        default=True,
        description="Submit Google Drive export tasks; False only builds the composites"
    )
    response_format: ResponseFormat = Field(
        default=ResponseFormat.MARKDOWN,
        description="Output format: 'markdown' for human-readable or 'json' for machine-readable"
    )

    @field_validator('config_path')
    @classmethod
    def validate_input_exists(cls, v: str) -> str:
        """Ensure the configuration file exists."""
        if not os.path.exists(v):
            raise ValueError(f"Configuration file not found: {v}")
        return v


# ============================================================================
# SHARED UTILITY FUNCTIONS
# ============================================================================

def _handle_error(e: Exception) -> str:
    """
    Consistent error formatting across all tools.

    Returns clear, actionable error messages for common failure scenarios.
    """
    error_msg = str(e)

    if isinstance(e, ExternalServiceError):
        retry = f" Retry unit '{e.unit}' on its own." if e.unit else ""
        if "authenticate" in error_msg.lower():
            return (
                f"Error: Earth Engine authentication required. "
                f"Please run 'earthengine authenticate' in your terminal first. "
                f"Details: {error_msg}"
            )
        return f"Error: Earth Engine request failed.{retry} Details: {error_msg}"
    elif isinstance(e, EmptyResultError):
        return (
            f"Error: No scenes found for the requested interval. Try: "
            f"(1) Widening the window, "
            f"(2) Raising max_cloud_cover, "
            f"(3) Checking the area of interest. "
            f"Details: {error_msg}"
        )
    elif isinstance(e, ConfigurationError):
        return f"Error: Invalid configuration. Details: {error_msg}"
    elif isinstance(e, FileNotFoundError) or "not found" in error_msg.lower():
        return f"Error: File or resource not found. Please check the path is correct. Details: {error_msg}"
    elif isinstance(e, PermissionError):
        return f"Error: Permission denied. Check file permissions and directory access. Details: {error_msg}"
    else:
        return f"Error: {error_msg}"


def _format_file_info(filepath: str) -> str:
    """Format file information as markdown."""
    if os.path.exists(filepath):
        size_mb = os.path.getsize(filepath) / (1024 * 1024)
        return f"- `{filepath}` ({size_mb:.2f} MB)"
    return f"- `{filepath}` (file not found)"


def _truncate(text: str) -> str:
    if len(text) <= CHARACTER_LIMIT:
        return text
    return text[:CHARACTER_LIMIT] + "\n\n... (truncated)"


# ============================================================================
# MCP TOOL IMPLEMENTATIONS
# ============================================================================

@mcp.tool(
    name="rs_generate_intervals",
    annotations={
        "title": "Plan Compositing Intervals",
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
        "openWorldHint": False
    }
)
async def rs_generate_intervals(params: GenerateIntervalsInput) -> str:
    """
    List the compositing intervals for a date range, cadence and window.

    Interval starts are start_date + k * step (k = 0, 1, ...) up to end_date;
    each interval ends window units after its start. A 1-year step with a
    121-day window gives one June-September season per year.

    Args:
        params (GenerateIntervalsInput): Validated input parameters containing:
            - start_date (str), end_date (str): YYYY-MM-DD
            - step (int), unit (str): cadence
            - window (int), window_unit (str): interval length
            - response_format (str): 'markdown' or 'json'

    Returns:
        str: Interval list, or "Error: <error message>"

    Examples:
        - Use when: "Which summer windows would a 2001-2005 yearly time series cover?"
        - Don't use when: You want the composites themselves (use rs_export_time_series)
    """
    try:
        intervals = make_intervals(
            params.start_date, params.end_date, params.step, params.unit,
            window=params.window, window_unit=params.window_unit
        )

        if params.response_format == ResponseFormat.MARKDOWN:
            lines = [
                "# Compositing Intervals",
                "",
                f"**{len(intervals)}** interval(s), every {params.step} {params.unit}, "
                f"{params.window} {params.window_unit} long",
                "",
            ]
            for idx, interval in enumerate(intervals, 1):
                lines.append(f"{idx}. {interval.label} to {interval.end:%Y-%m-%d} (year {interval.year})")
            return _truncate("\n".join(lines))

        result = {
            "count": len(intervals),
            "intervals": [
                {"start": i.label, "end": i.end.strftime('%Y-%m-%d'), "year": i.year, "month": i.month}
                for i in intervals
            ]
        }
        return _truncate(json.dumps(result, indent=2))

    except Exception as e:
        return _handle_error(e)


@mcp.tool(
    name="rs_list_indices",
    annotations={
        "title": "List Spectral Indices",
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
        "openWorldHint": False
    }
)
async def rs_list_indices(params: ListIndicesInput) -> str:
    """
    List the spectral indices the pipelines can compute.

    Args:
        params (ListIndicesInput): Validated input parameters containing:
            - sensor (Optional[str]): filter by sensor
            - response_format (str): 'markdown' or 'json'

    Returns:
        str: Index names, expressions and output ranges, or "Error: <error message>"
    """
    try:
        definitions = [
            d for d in INDEX_DEFINITIONS.values()
            if params.sensor is None or params.sensor.lower() in d.sensors
        ]

        if params.response_format == ResponseFormat.MARKDOWN:
            lines = ["# Spectral Indices", ""]
            for d in definitions:
                value_range = f"[{d.value_range[0]}, {d.value_range[1]}]" if d.value_range else "unbounded"
                lines.append(f"- **{d.name}** ({d.description}): `{d.expression}`, range {value_range}")
            return "\n".join(lines)

        result = {
            "count": len(definitions),
            "indices": [
                {
                    "name": d.name,
                    "description": d.description,
                    "expression": d.expression,
                    "clamp": list(d.clamp) if d.clamp else None,
                    "sensors": list(d.sensors)
                }
                for d in definitions
            ]
        }
        return json.dumps(result, indent=2)

    except Exception as e:
        return _handle_error(e)


@mcp.tool(
    name="rs_mosaic_tiles",
    annotations={
        "title": "Mosaic GeoTIFF Tiles",
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": True,
        "openWorldHint": False
    }
)
async def rs_mosaic_tiles(params: MosaicTilesInput) -> str:
    """
    Mosaic GeoTIFF tiles into a single float32 GeoTIFF.

    Tiles must share CRS, resolution and band count. Overlapping pixels are
    combined with the chosen function; nodata never contributes.

    Args:
        params (MosaicTilesInput): Validated input parameters containing:
            - tile_files (Optional[List[str]]) or input_dir (Optional[str])
            - output_path (str): destination GeoTIFF (overwritten)
            - fun (str): mean, sum, min, max, median, first or last

    Returns:
        str: JSON-formatted result, or "Error: <error message>"
    """
    try:
        if params.tile_files:
            tiles = params.tile_files
        elif params.input_dir:
            tiles = mosaic_utils.list_tiles(params.input_dir)
        else:
            raise ConfigurationError("Provide tile_files or input_dir")

        output_path = mosaic_utils.mosaic(tiles, params.output_path, fun=params.fun.value)
        size_mb = os.path.getsize(output_path) / (1024 * 1024) if os.path.exists(output_path) else 0

        result = {
            "status": "success",
            "output_path": output_path,
            "tile_count": len(tiles),
            "function": params.fun.value,
            "size_mb": round(size_mb, 2)
        }
        return json.dumps(result, indent=2)

    except Exception as e:
        return _handle_error(e)


@mcp.tool(
    name="rs_mosaic_by_year",
    annotations={
        "title": "Mosaic Tiles by Year",
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": True,
        "openWorldHint": False
    }
)
async def rs_mosaic_by_year(params: MosaicByYearInput) -> str:
    """
    Group tiles by the '_YYYY-' token in their names and write one mosaic per year.

    Args:
        params (MosaicByYearInput): Validated input parameters containing:
            - input_dir (str), output_dir (str)
            - fun (str), prefix (str), workers (int)
            - on_unmatched (str): 'warn', 'ignore' or 'error'
            - response_format (str): 'markdown' or 'json'

    Returns:
        str: Written mosaics per year, or "Error: <error message>"

    Examples:
        - Use when: "Mosaic the exported tiles into one raster per year"
        - Don't use when: Tiles of several years should go into one raster (use rs_mosaic_tiles)
    """
    try:
        outputs = mosaic_utils.mosaic_by_year(
            params.input_dir,
            params.output_dir,
            fun=params.fun.value,
            prefix=params.prefix,
            workers=params.workers,
            on_unmatched=params.on_unmatched.value
        )

        if params.response_format == ResponseFormat.MARKDOWN:
            if not outputs:
                return f"No year-tagged tiles found in `{params.input_dir}`"
            lines = [
                "# Yearly Mosaics",
                "",
                f"Wrote **{len(outputs)}** mosaic(s) with '{params.fun.value}':",
                "",
            ]
            for year, path in outputs.items():
                lines.append(f"**{year}**")
                lines.append(_format_file_info(path))
            return "\n".join(lines)

        result = {
            "status": "success",
            "count": len(outputs),
            "mosaics": {str(year): path for year, path in outputs.items()}
        }
        return json.dumps(result, indent=2)

    except Exception as e:
        return _handle_error(e)


@mcp.tool(
    name="rs_export_time_series",
    annotations={
        "title": "Export Earth Engine Time Series",
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": False,
        "openWorldHint": True
    }
)
async def rs_export_time_series(params: ExportTimeSeriesInput) -> str:
    """
    Build interval composites on Earth Engine and export them to Google Drive.

    The configuration file sets dates, cadence, window, sensor, masks,
    indices, NDRS forest types, area of interest and export options.

    Args:
        params (ExportTimeSeriesInput): Validated input parameters containing:
            - config_path (str): YAML / JSON pipeline configuration
            - project (Optional[str]): Earth Engine project
            - submit (bool): submit export tasks (default: True)
            - response_format (str): 'markdown' or 'json'

    Returns:
        str: Per-interval status and submitted tasks, or "Error: <error message>"

    Error Handling:
        - Returns "Error: Earth Engine authentication required" if EE not authenticated
        - Empty intervals are reported per interval and do not stop the run
    """
    try:
        config = load_config(params.config_path)
        earth_engine.initialize(params.project)
        results, tasks = run_ee_time_series(config, submit=params.submit)

        summary = results.summary()
        if params.response_format == ResponseFormat.MARKDOWN:
            lines = [
                "# Earth Engine Time Series",
                "",
                f"- Successful intervals: {summary['success']}",
                f"- Empty intervals: {summary['empty']}",
                f"- Failed intervals: {summary['error']}",
                f"- Export tasks submitted: {len(tasks)} (folder `{config.export.folder}`)",
                "",
            ]
            for result in results:
                detail = f": {result.error}" if result.error else ""
                lines.append(f"- {result.interval.label}: {result.status}{detail}")
            return _truncate("\n".join(lines))

        result = {
            "summary": summary,
            "tasks_submitted": len(tasks),
            "folder": config.export.folder,
            "intervals": [
                {"start": r.interval.label, "status": r.status, "error": r.error}
                for r in results
            ]
        }
        return _truncate(json.dumps(result, indent=2))

    except Exception as e:
        return _handle_error(e)


# ============================================================================
# MAIN ENTRY POINT
# ============================================================================

if __name__ == "__main__":
    setup_logging('INFO', stream=sys.stderr)
    mcp.run()
