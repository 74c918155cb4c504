"""
strategylab Backend Server
FastAPI + NumPy + Numba
"""
import logging
import os
import time
import uuid
from contextlib import asynccontextmanager
from io import StringIO
from pathlib import Path
from typing import Any, Dict, List

import pandas as pd
from fastapi import FastAPI, File, HTTPException, Query, UploadFile
from fastapi.middleware.cors import CORSMiddleware

from strategylab import __version__
from strategylab.backtest import BacktestEngine
from strategylab.compression import pack, unpack
from strategylab.indicators import IndicatorBank
from strategylab.models import (
    AnnotatedCandle, BacktestRequest, Candle, EquityPoint, IndicatorConfig, OptimizationRequest,
    ScreenRequest, Timeframe, WalkForwardRequest,
)
from strategylab.optimizer import (
    AnnotatedSeriesCache, GridSearchOptimizer, make_backtest_runner, make_window_runner,
)
from strategylab.performance import calculate_performance
from strategylab.screening import GradeHistoryTracker, ScreenerEngine
from strategylab.walkforward import WalkForwardAnalyzer

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# Global storage (in production, use Redis/DB)
# symbols: {symbol: {Timeframe: [Candle]}}, runs: {run_id: {artifact: compressed json}}
data_store: Dict[str, Any] = {'symbols': {}, 'runs': {}}
grade_history = GradeHistoryTracker()

# CORS origins (restrict in production via CORS_ORIGINS env var)
CORS_ORIGINS = os.environ.get(
    "CORS_ORIGINS",
    "http://localhost:5173,http://localhost:4000,http://127.0.0.1:5173"
).split(",")

OPTIMIZER_MAX_WORKERS = int(os.environ["OPTIMIZER_MAX_WORKERS"]) if os.environ.get("OPTIMIZER_MAX_WORKERS") else None

TRADE_PAYLOAD_EXCLUDE = {'equityCurve', 'trades', 'log'}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup/shutdown lifecycle"""
    _load_default_data()
    yield


# Initialize FastAPI
app = FastAPI(title="strategylab Backend", version=__version__, lifespan=lifespan)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _parse_csv_to_candles(df: pd.DataFrame, timeframe: Timeframe = Timeframe.DAILY) -> List[Candle]:
    """Parse a DataFrame into time-ordered candles"""
    df.columns = df.columns.str.lower().str.strip()
    for alias in ('datetime', 'date', 'timestamp'):
        if alias in df.columns and 'time' not in df.columns:
            df.rename(columns={alias: 'time'}, inplace=True)

    required_cols = ['time', 'open', 'high', 'low', 'close', 'volume']
    missing = [c for c in required_cols if c not in df.columns]
    if missing:
        raise ValueError(f"CSV must contain: {required_cols} (missing: {missing}, found: {list(df.columns)})")

    if pd.api.types.is_numeric_dtype(df['time']):
        df['time'] = pd.to_datetime(df['time'], unit='s')
    else:
        df['time'] = pd.to_datetime(df['time'])
    df = df.sort_values('time').reset_index(drop=True)

    return [
        Candle(timestamp=row.time.to_pydatetime(), open=float(row.open), high=float(row.high),
               low=float(row.low), close=float(row.close), volume=float(row.volume), timeframe=timeframe)
        for row in df[required_cols].itertuples(index=False)
    ]


def _load_default_data():
    """Load default CSV file on startup"""
    default_csv_path = os.environ.get("DEFAULT_CSV_PATH")
    if not default_csv_path:
        return

    if os.path.exists(default_csv_path):
        symbol = os.environ.get("DEFAULT_SYMBOL", Path(default_csv_path).stem.upper())
        logger.info(f"🚀 Loading default data for {symbol} from {default_csv_path}...")
        try:
            candles = _parse_csv_to_candles(pd.read_csv(default_csv_path))
            data_store['symbols'].setdefault(symbol, {})[Timeframe.DAILY] = candles
            logger.info(f"✅ Loaded {len(candles)} bars from default CSV")
        except (ValueError, OSError) as e:
            logger.error(f"❌ Failed to load default CSV: {e}")
    else:
        logger.warning(f"⚠️ Default CSV not found at {default_csv_path}")


def _get_candles(symbol: str) -> Dict[Timeframe, List[Candle]]:
    candles = data_store['symbols'].get(symbol)
    if not candles or not candles.get(Timeframe.DAILY):
        raise HTTPException(status_code=400, detail=f"No daily data loaded for {symbol}. Upload CSV first.")
    return candles


def _build_bars(symbol: str, indicator_config: IndicatorConfig) -> List[AnnotatedCandle]:
    return IndicatorBank(_get_candles(symbol), indicator_config, aggregate_missing=True).build()


def _benchmark_curve(symbol: str) -> List[EquityPoint]:
    return [EquityPoint(date=c.timestamp, value=c.close) for c in _get_candles(symbol)[Timeframe.DAILY]]


def _store_run(**artifacts) -> str:
    run_id = uuid.uuid4().hex[:12]
    data_store['runs'][run_id] = {name: pack(value) for name, value in artifacts.items()}
    return run_id


@app.get("/")
def read_root():
    """Health check"""
    return {
        "status": "online",
        "service": "strategylab Backend",
        "version": __version__
    }


@app.get("/status")
def get_status():
    """Get backend status"""
    return {
        "symbols": {
            symbol: {tf.value: len(bars) for tf, bars in timeframes.items()}
            for symbol, timeframes in data_store['symbols'].items()
        },
        "runs": len(data_store['runs']),
    }


@app.post("/upload-csv")
async def upload_csv(symbol: str = Query(...), timeframe: Timeframe = Query(Timeframe.DAILY),
                     file: UploadFile = File(...)):
    """Upload OHLCV CSV for one symbol/timeframe"""
    try:
        start_time = time.time()

        contents = await file.read()
        candles = _parse_csv_to_candles(pd.read_csv(StringIO(contents.decode('utf-8'))), timeframe)
        data_store['symbols'].setdefault(symbol.upper(), {})[timeframe] = candles

        elapsed = time.time() - start_time
        return {
            "success": True,
            "symbol": symbol.upper(),
            "timeframe": timeframe.value,
            "bars": len(candles),
            "elapsed_seconds": round(elapsed, 2),
            "message": f"✅ Loaded {len(candles)} bars in {elapsed:.2f}s"
        }

    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.exception("Upload failed")
        raise HTTPException(status_code=500, detail=str(e))


@app.post("/backtest")
def run_backtest(request: BacktestRequest):
    """Run single backtest"""
    try:
        start_time = time.time()
        symbol = request.symbol.upper()

        bars = _build_bars(symbol, request.indicatorConfig)
        result = BacktestEngine(request.strategy, request.config).run(bars, symbol)

        benchmark = _benchmark_curve(request.benchmarkSymbol.upper()) if request.benchmarkSymbol else None
        metrics = calculate_performance(result, request.config.riskFreeRate, benchmark)

        run_id = _store_run(
            equity=[p.model_dump(mode='json') for p in result.equityCurve],
            trades=[t.model_dump(mode='json') for t in result.trades],
            log=result.log,
        )

        elapsed = time.time() - start_time
        logger.info(f"⚡ Backtest {symbol} completed in {elapsed:.3f}s")
        return {
            "success": True,
            "runId": run_id,
            "elapsed_seconds": round(elapsed, 3),
            "result": result.model_dump(mode='json', exclude=TRADE_PAYLOAD_EXCLUDE),
            "metrics": metrics.model_dump(mode='json'),
        }

    except HTTPException:
        raise
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.exception("Backtest failed")
        raise HTTPException(status_code=500, detail=str(e))


@app.get("/runs/{run_id}/{artifact}")
def get_run_artifact(run_id: str, artifact: str):
    """Decompress a stored run artifact (equity, trades, log)"""
    run = data_store['runs'].get(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail=f"Unknown run {run_id}")
    if artifact not in run:
        raise HTTPException(status_code=404, detail=f"Run {run_id} has no '{artifact}' artifact")
    return {"runId": run_id, artifact: unpack(run[artifact])}


@app.post("/optimize")
def run_optimization(request: OptimizationRequest):
    """Run grid search optimization"""
    try:
        start_time = time.time()
        symbol = request.symbol.upper()

        cache = AnnotatedSeriesCache(_get_candles(symbol))
        runner = make_backtest_runner(cache, request.strategy, symbol, request.config, request.indicatorConfig)
        optimizer = GridSearchOptimizer(runner, request.config.riskFreeRate, request.topN, OPTIMIZER_MAX_WORKERS)
        result = optimizer.run(request.parameterSpace, parallel=request.parallel)

        elapsed = time.time() - start_time
        logger.info(f"✅ Optimization completed in {elapsed:.2f}s")
        return {
            "success": True,
            "elapsed_seconds": round(elapsed, 2),
            **result.model_dump(mode='json', exclude={
                'topResults': {'__all__': {'result': TRADE_PAYLOAD_EXCLUDE}}
            }),
        }

    except HTTPException:
        raise
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.exception("Optimization failed")
        raise HTTPException(status_code=500, detail=str(e))


@app.post("/walk-forward")
def run_walk_forward(request: WalkForwardRequest):
    """Run walk-forward analysis"""
    try:
        symbol = request.symbol.upper()

        cache = AnnotatedSeriesCache(_get_candles(symbol))
        bars = cache.get(request.indicatorConfig)
        runner = make_window_runner(cache, request.strategy, symbol, request.config, request.indicatorConfig)
        analyzer = WalkForwardAnalyzer(runner, request.walkForward, OPTIMIZER_MAX_WORKERS)
        result = analyzer.analyze(bars, request.parameterSpace)

        run_id = _store_run(equity=[p.model_dump(mode='json') for p in result.aggregatedEquityCurve])
        return {
            "success": True,
            "runId": run_id,
            **result.model_dump(mode='json', exclude={
                'aggregatedEquityCurve': True,
                'windows': {'__all__': {'outOfSampleEquity'}},
            }),
        }

    except HTTPException:
        raise
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.exception("Walk-forward failed")
        raise HTTPException(status_code=500, detail=str(e))


@app.post("/screen")
def run_screen(request: ScreenRequest):
    """Scan loaded symbols for graded entry signals"""
    try:
        symbols = [s.upper() for s in request.symbols] if request.symbols else list(data_store['symbols'])
        symbol_data: Dict[str, List[AnnotatedCandle]] = {}
        skipped: List[str] = []
        for symbol in symbols:
            candles = data_store['symbols'].get(symbol)
            if not candles:
                skipped.append(f"{symbol}: no data loaded")
                continue
            if not candles.get(Timeframe.DAILY):
                skipped.append(f"{symbol}: no daily data loaded")
                continue
            try:
                symbol_data[symbol] = _build_bars(symbol, request.indicatorConfig)
            except Exception as e:
                skipped.append(f"{symbol}: indicator build failed ({e})")
                logger.warning(f"⚠️ Screener could not build bars for {symbol}: {e}")

        engine = ScreenerEngine(request.strategy, request.config)
        run = engine.scan(symbol_data, {k.upper(): v for k, v in request.winRates.items()}, grade_history)
        run.symbolsScanned += len(skipped)
        run.warnings.extend(skipped)
        return {"success": True, **run.model_dump(mode='json')}

    except HTTPException:
        raise
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.exception("Screen failed")
        raise HTTPException(status_code=500, detail=str(e))


@app.get("/grades/accuracy")
def get_grade_accuracy():
    """Realised win rate per issued grade"""
    summary = grade_history.accuracy_summary()
    return {grade.value: stats.model_dump(mode='json') for grade, stats in summary.items()}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=int(os.environ.get("PORT", 4000)))
