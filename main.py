"""
Silver Premium API - Shanghai vs COMEX
Tracks the premium of Shanghai Gold Exchange silver (Ag(T+D), RMB/kg) over the
COMEX silver spot price, normalized to USD per troy ounce with a live USD/CNY rate.
"""

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, ConfigDict, Field
from typing import Any, Awaitable, Callable, Optional, Union
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from enum import Enum
import httpx
import asyncio
import logging
import math
from bs4 import BeautifulSoup

# ══════════════════════════════════════════════════════════════════════════════
# Configuration
# ══════════════════════════════════════════════════════════════════════════════

TROY_OZ_PER_KG = 32.1507465686

SGE_URL = "https://en.sge.com.cn/data_DelayedQuotes"
COMEX_URL = "https://data-asg.goldprice.org/dbXRates/USD"
FX_URL = "https://open.er-api.com/v6/latest/USD"

SGE_VARIETY = "Ag(T+D)"  # Exact label of the silver deferred contract row
FX_QUOTE_CURRENCY = "CNY"

SOURCE_TIMEOUT_SECONDS = 12.0  # Per-source budget for /api/prices
SHANGHAI_SGE_TIMEOUT_SECONDS = 15.0
SHANGHAI_FX_TIMEOUT_SECONDS = 10.0

PRICES_CACHE_CONTROL = "s-maxage=60, stale-while-revalidate=300"
SHANGHAI_CACHE_CONTROL = "s-maxage=1800, stale-while-revalidate=7200"
SHANGHAI_ERROR_CACHE_CONTROL = "s-maxage=60, stale-while-revalidate=3600"

SGE_HEADERS = {
    "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36",
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
}

# Shared HTTP client for connection pooling
_http_client: Optional[httpx.AsyncClient] = None

async def get_http_client() -> httpx.AsyncClient:
    """Get or create the shared HTTP client."""
    global _http_client
    if _http_client is None:
        _http_client = httpx.AsyncClient(
            timeout=SOURCE_TIMEOUT_SECONDS,
            follow_redirects=True,
            limits=httpx.Limits(max_keepalive_connections=10, max_connections=30),
        )
    return _http_client


async def close_http_client():
    global _http_client
    if _http_client is not None:
        await _http_client.aclose()
        _http_client = None

# ══════════════════════════════════════════════════════════════════════════════
# Errors
# ══════════════════════════════════════════════════════════════════════════════

class SourceError(Exception):
    """A single upstream failed. Reported in the response, never raised to the caller."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class HttpStatusError(SourceError):
    def __init__(self, label: str, status_code: int):
        super().__init__(f"{label} HTTP {status_code}")
        self.status_code = status_code


class FetchTimeoutError(SourceError):
    def __init__(self, label: str, timeout_seconds: float):
        super().__init__(f"{label} request timed out after {timeout_seconds}s")
        self.timeout_seconds = timeout_seconds


class RequestFailedError(SourceError):
    pass


class NotFoundError(SourceError):
    pass


class InvalidValueError(SourceError):
    pass


class DependencyUnmetError(SourceError):
    pass

# ══════════════════════════════════════════════════════════════════════════════
# Models
# ══════════════════════════════════════════════════════════════════════════════

class Source(str, Enum):
    sge = "sge"
    comex = "comex"
    fx = "fx"


class SpotQuote(BaseModel):
    """Raw Ag(T+D) quote in RMB per kilogram."""
    latest: float
    high: Optional[float] = None
    low: Optional[float] = None
    open: Optional[float] = None


class ReferencePrice(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    price: float
    change: Optional[float] = None
    change_percent: Optional[float] = Field(default=None, alias="changePercent")
    prev_close: Optional[float] = Field(default=None, alias="prevClose")
    timestamp: str


class ExchangeRate(BaseModel):
    usd_cny: float


class NormalizedQuote(BaseModel):
    usd_per_oz: float
    rmb_per_kg: float
    rmb_high: Optional[float] = None
    rmb_low: Optional[float] = None
    rmb_open: Optional[float] = None


class Premium(BaseModel):
    usd: float
    percent: float


class SourceErrorEntry(BaseModel):
    source: Source
    message: str


class CompositeResult(BaseModel):
    timestamp: datetime
    sge: Optional[NormalizedQuote] = None
    comex: Optional[ReferencePrice] = None
    fx: Optional[ExchangeRate] = None
    premium: Optional[Premium] = None
    errors: list[SourceErrorEntry] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        """At least one price made it through."""
        return self.sge is not None or self.comex is not None


class ShanghaiQuote(NormalizedQuote):
    usd_cny_rate: float
    timestamp: datetime
    source: str = "Shanghai Gold Exchange - Ag(T+D) Delayed Quotes"
    note: str = "Exchange rate is USD/CNY (onshore). Offshore CNH rate may differ slightly."


class HealthResponse(BaseModel):
    status: str
    timestamp: datetime


def utc_now() -> datetime:
    return datetime.now(timezone.utc)

# ══════════════════════════════════════════════════════════════════════════════
# Unit Conversion
# ══════════════════════════════════════════════════════════════════════════════

def rmb_per_kg_to_usd_per_oz(rmb_per_kg: float, usd_cny: float) -> float:
    """
    Convert an RMB/kg price to USD per troy ounce.
    Formula: USD/oz = RMB/kg / (32.1507465686 * USD/CNY)
    """
    return round(rmb_per_kg / (TROY_OZ_PER_KG * usd_cny), 4)


def calculate_premium(usd_per_oz: float, reference_price: float) -> Premium:
    """Premium of the normalized Shanghai price over the reference price."""
    difference = usd_per_oz - reference_price
    return Premium(
        usd=round(difference, 4),
        percent=round((difference / reference_price) * 100, 2),
    )


def normalize_sge_quote(quote: SpotQuote, rate: ExchangeRate) -> NormalizedQuote:
    return NormalizedQuote(
        usd_per_oz=rmb_per_kg_to_usd_per_oz(quote.latest, rate.usd_cny),
        rmb_per_kg=quote.latest,
        rmb_high=quote.high,
        rmb_low=quote.low,
        rmb_open=quote.open,
    )

# ══════════════════════════════════════════════════════════════════════════════
# Parsing
# ══════════════════════════════════════════════════════════════════════════════

def parse_number(value: Any) -> Optional[float]:
    """Lenient numeric parse. Blank, non-numeric and non-finite values become None."""
    if value is None or isinstance(value, bool):
        return None
    text = str(value).strip().replace(",", "")
    if not text:
        return None
    try:
        number = float(text)
    except ValueError:
        return None
    if not math.isfinite(number):
        return None
    return number


def find_table_rows(html: str, label: str, min_cells: int = 4) -> list[list[str]]:
    """
    Return the stripped cell texts of every table row whose first cell is exactly `label`.
    Rows with fewer than `min_cells` data cells are skipped (header rows, spacers).
    """
    soup = BeautifulSoup(html, "lxml")
    rows = []
    for row in soup.select("table tr"):
        cells = [cell.get_text().strip() for cell in row.find_all("td")]
        if len(cells) >= min_cells and cells[0] == label:
            rows.append(cells)
    return rows


def parse_sge_quote(html: str, variety: str = SGE_VARIETY) -> SpotQuote:
    """
    Extract the delayed quote for `variety` from the SGE quotes page.
    Columns: variety, latest, high, low, [open]. A latest price of zero means the
    market is closed and is never reported as a price.
    """
    rows = find_table_rows(html, variety)
    if not rows:
        raise NotFoundError(f"{variety} not found or market closed")

    quote = None
    for cells in rows:
        latest = parse_number(cells[1])
        if latest is None or latest <= 0:
            continue
        open_price = parse_number(cells[4]) if len(cells) >= 5 else None
        quote = SpotQuote(
            latest=latest,
            high=parse_number(cells[2]),
            low=parse_number(cells[3]),
            open=open_price or None,  # 0.0 is "no open yet"
        )

    if quote is None:
        raise InvalidValueError(f"{variety} not found or market closed")
    return quote


def parse_comex_price(data: Any) -> ReferencePrice:
    """Read the XAG/USD quote from the first entry of a goldprice.org payload."""
    items = data.get("items") if isinstance(data, dict) else None
    item = items[0] if isinstance(items, list) and items else None
    if not isinstance(item, dict) or not item.get("xagPrice"):
        raise NotFoundError("Silver price not found in COMEX data")

    price = parse_number(item["xagPrice"])
    if price is None or price <= 0:
        raise InvalidValueError(f"Invalid COMEX silver price: {item['xagPrice']!r}")

    timestamp = data.get("date")
    return ReferencePrice(
        price=price,
        change=parse_number(item.get("chgXag")),
        change_percent=parse_number(item.get("pcXag")),
        prev_close=parse_number(item.get("xagClose")),
        timestamp=str(timestamp) if timestamp else utc_now().isoformat(timespec="milliseconds").replace("+00:00", "Z"),
    )


def parse_fx_rate(data: Any, currency: str = FX_QUOTE_CURRENCY) -> ExchangeRate:
    rates = data.get("rates") if isinstance(data, dict) else None
    raw_rate = rates.get(currency) if isinstance(rates, dict) else None
    if raw_rate is None or raw_rate == "":
        raise NotFoundError(f"{currency} rate not found")

    rate = parse_number(raw_rate)
    if rate is None or rate <= 0:
        raise InvalidValueError(f"Invalid {currency} rate: {raw_rate!r}")
    return ExchangeRate(usd_cny=rate)

# ══════════════════════════════════════════════════════════════════════════════
# Source Fetching
# ══════════════════════════════════════════════════════════════════════════════

async def _get(
    client: httpx.AsyncClient,
    url: str,
    label: str,
    timeout: float,
    headers: Optional[dict] = None,
) -> httpx.Response:
    """Single GET with status check. Transport failures become SourceErrors."""
    try:
        response = await client.get(url, headers=headers, timeout=timeout)
    except httpx.TimeoutException as e:
        raise FetchTimeoutError(label, timeout) from e
    except httpx.RequestError as e:
        raise RequestFailedError(f"{label} request failed: {str(e) or type(e).__name__}") from e

    if not response.is_success:
        raise HttpStatusError(label, response.status_code)
    return response


def _json(response: httpx.Response, label: str) -> Any:
    try:
        return response.json()
    except ValueError as e:
        raise InvalidValueError(f"{label} returned invalid JSON") from e


async def fetch_sge(client: httpx.AsyncClient, timeout: float = SOURCE_TIMEOUT_SECONDS) -> SpotQuote:
    """Scrape the Ag(T+D) delayed quote from the Shanghai Gold Exchange."""
    response = await _get(client, SGE_URL, "SGE", timeout, headers=SGE_HEADERS)
    return parse_sge_quote(response.text)


async def fetch_comex(client: httpx.AsyncClient, timeout: float = SOURCE_TIMEOUT_SECONDS) -> ReferencePrice:
    """Fetch the XAG/USD spot price from goldprice.org."""
    response = await _get(client, COMEX_URL, "COMEX", timeout)
    return parse_comex_price(_json(response, "COMEX"))


async def fetch_fx(client: httpx.AsyncClient, timeout: float = SOURCE_TIMEOUT_SECONDS) -> ExchangeRate:
    """Fetch the USD/CNY rate from open.er-api.com."""
    response = await _get(client, FX_URL, "FX", timeout)
    return parse_fx_rate(_json(response, "FX"))


async def fetch_with_timeout(
    fetcher: Callable[[httpx.AsyncClient, float], Awaitable[Any]],
    label: str,
    client: httpx.AsyncClient,
    timeout_seconds: float,
) -> Any:
    """Run one fetcher under a hard deadline; the in-flight request is cancelled on expiry."""
    try:
        return await asyncio.wait_for(fetcher(client, timeout_seconds), timeout=timeout_seconds)
    except asyncio.TimeoutError as e:
        raise FetchTimeoutError(label, timeout_seconds) from e

# ══════════════════════════════════════════════════════════════════════════════
# Aggregation
# ══════════════════════════════════════════════════════════════════════════════

Outcome = Union[SpotQuote, ReferencePrice, ExchangeRate, BaseException]


def _error_entry(source: Source, error: BaseException) -> SourceErrorEntry:
    return SourceErrorEntry(source=source, message=str(error) or "Unknown error")


def assemble_result(
    sge_outcome: Outcome,
    comex_outcome: Outcome,
    fx_outcome: Outcome,
    timestamp: Optional[datetime] = None,
) -> CompositeResult:
    """
    Combine the three source outcomes into one response.

    Each outcome is either the fetched value or the exception that source raised.
    The Shanghai quote needs the FX rate to be normalized, and the premium needs
    both the normalized quote and the COMEX price. Every failure, including an
    unmet dependency, ends up in `errors`.
    """
    result = CompositeResult(timestamp=timestamp or utc_now())

    if isinstance(fx_outcome, BaseException):
        result.errors.append(_error_entry(Source.fx, fx_outcome))
    else:
        result.fx = fx_outcome

    if isinstance(comex_outcome, BaseException):
        result.errors.append(_error_entry(Source.comex, comex_outcome))
    else:
        result.comex = comex_outcome

    if isinstance(sge_outcome, BaseException):
        result.errors.append(_error_entry(Source.sge, sge_outcome))
    elif result.fx is not None:
        result.sge = normalize_sge_quote(sge_outcome, result.fx)
    else:
        result.errors.append(
            _error_entry(Source.sge, DependencyUnmetError("Cannot convert without FX rate"))
        )

    if result.sge is not None and result.comex is not None:
        result.premium = calculate_premium(result.sge.usd_per_oz, result.comex.price)

    return result


async def run_aggregation_cycle(
    client: Optional[httpx.AsyncClient] = None,
    timeout_seconds: float = SOURCE_TIMEOUT_SECONDS,
) -> CompositeResult:
    """
    Fetch SGE, COMEX and FX concurrently and assemble the composite result.
    All three fetches are allowed to settle; one failing source never hides the others.
    """
    if client is None:
        client = await get_http_client()

    started_at = utc_now()
    sge_outcome, comex_outcome, fx_outcome = await asyncio.gather(
        fetch_with_timeout(fetch_sge, "SGE", client, timeout_seconds),
        fetch_with_timeout(fetch_comex, "COMEX", client, timeout_seconds),
        fetch_with_timeout(fetch_fx, "FX", client, timeout_seconds),
        return_exceptions=True,
    )

    result = assemble_result(sge_outcome, comex_outcome, fx_outcome, timestamp=started_at)

    for entry in result.errors:
        logging.warning(f"Source {entry.source.value} failed: {entry.message}")
    succeeded = [name for name, value in (("sge", result.sge), ("comex", result.comex), ("fx", result.fx)) if value is not None]
    logging.info(f"Price aggregation: {len(succeeded)} sources succeeded, {len(result.errors)} errors")
    if not result.ok:
        logging.error("Price aggregation: no usable price from any source")

    return result


async def fetch_shanghai_quote(client: Optional[httpx.AsyncClient] = None) -> ShanghaiQuote:
    """
    Strict SGE-only quote: both the SGE page and the FX rate must succeed.
    Raises the first SourceError (SGE before FX) when either fails.
    """
    if client is None:
        client = await get_http_client()

    quote, rate = await asyncio.gather(
        fetch_with_timeout(fetch_sge, "SGE", client, SHANGHAI_SGE_TIMEOUT_SECONDS),
        fetch_with_timeout(fetch_fx, "FX", client, SHANGHAI_FX_TIMEOUT_SECONDS),
        return_exceptions=True,
    )
    for outcome in (quote, rate):
        if isinstance(outcome, BaseException):
            raise outcome

    normalized = normalize_sge_quote(quote, rate)
    return ShanghaiQuote(
        **normalized.model_dump(),
        usd_cny_rate=rate.usd_cny,
        timestamp=utc_now(),
    )

# ══════════════════════════════════════════════════════════════════════════════
# FastAPI Application
# ══════════════════════════════════════════════════════════════════════════════

@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    await close_http_client()


app = FastAPI(
    title="Silver Premium API",
    description="""
## Shanghai Silver Premium

Compares the **Shanghai Gold Exchange Ag(T+D)** delayed quote with the **COMEX**
silver spot price.

The SGE quote (RMB per kilogram) is converted to **USD per troy ounce** using the
live USD/CNY rate: `USD/oz = RMB/kg / (32.1507465686 * USD/CNY)`.

### Features
- ✅ **Partial results** - one broken source never hides the other two
- ✅ **Error transparency** - every failed source is listed with a reason
- ✅ **CORS enabled** - Use from any frontend
- ✅ **CDN friendly** - short cache with a stale-while-revalidate window
    """,
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# Enable CORS for all origins (read-only API)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "OPTIONS"],
    allow_headers=["*"],
)

# ══════════════════════════════════════════════════════════════════════════════
# API Endpoints
# ══════════════════════════════════════════════════════════════════════════════

@app.get("/", tags=["Root"])
async def root():
    """Welcome endpoint with API information."""
    return {
        "name": "Silver Premium API",
        "version": "1.0.0",
        "description": "Shanghai Ag(T+D) premium over COMEX silver",
        "documentation": "/docs",
        "endpoints": {
            "prices": "/api/prices",
            "shanghai": "/api/shanghai",
            "health": "/api/v1/health",
        },
    }


@app.get("/api/v1/health", response_model=HealthResponse, tags=["System"])
async def health_check():
    """Check API health."""
    return HealthResponse(status="healthy", timestamp=utc_now())


@app.get("/api/prices", tags=["Prices"])
async def get_prices():
    """
    SGE, COMEX and FX in one response, plus the Shanghai premium.

    Returns 200 when either the SGE or the COMEX price is available and 502 when
    neither is. Missing pieces are listed in `errors`.
    """
    result = await run_aggregation_cycle()
    return JSONResponse(
        status_code=200 if result.ok else 502,
        content=result.model_dump(mode="json", by_alias=True),
        headers={"Cache-Control": PRICES_CACHE_CONTROL},
    )


@app.get("/api/shanghai", tags=["Prices"])
async def get_shanghai():
    """SGE Ag(T+D) price converted to USD/oz. Fails as a whole if SGE or FX is unavailable."""
    try:
        quote = await fetch_shanghai_quote()
    except Exception as e:
        logging.error(f"Shanghai API error: {str(e)}")
        return JSONResponse(
            status_code=500,
            content={
                "error": str(e) or "Unknown error",
                "timestamp": utc_now().isoformat(),
                "hint": "SGE may be unreachable or market is closed. Cached data may still be served.",
            },
            headers={"Cache-Control": SHANGHAI_ERROR_CACHE_CONTROL},
        )

    return JSONResponse(
        content=quote.model_dump(mode="json"),
        headers={"Cache-Control": SHANGHAI_CACHE_CONTROL},
    )


@app.options("/api/prices", include_in_schema=False)
@app.options("/api/shanghai", include_in_schema=False)
async def preflight():
    return Response(status_code=200)

# ══════════════════════════════════════════════════════════════════════════════
# Error Handlers
# ══════════════════════════════════════════════════════════════════════════════

@app.exception_handler(404)
async def not_found_handler(request, exc):
    return JSONResponse(
        status_code=404,
        content={
            "error": "Not Found",
            "message": "The requested endpoint does not exist.",
            "available_endpoints": ["/api/prices", "/api/shanghai", "/api/v1/health", "/docs"],
        },
    )


@app.exception_handler(Exception)
async def server_error_handler(request: Request, exc: Exception):
    logging.error(f"Unhandled exception in {request.url.path}: {str(exc)}", exc_info=exc)

    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal Server Error",
            "message": "Something went wrong. Please try again.",
            "detail": str(exc) or "Unknown error",
        },
    )

# ══════════════════════════════════════════════════════════════════════════════
# Run Server
# ══════════════════════════════════════════════════════════════════════════════

if __name__ == "__main__":
    import uvicorn

    print("🥈 Starting Silver Premium API...")
    print("📖 Documentation: http://localhost:8000/docs")
    print("🔧 Health Check: http://localhost:8000/api/v1/health")

    uvicorn.run(app, host="0.0.0.0", port=8000)
