#!/usr/bin/env python3

from flask import Flask, jsonify, request, send_file
from flask_cors import CORS
import argparse
import os
from datetime import date, datetime
from decimal import Decimal
from dotenv import load_dotenv
import io

from delivery_planning.dependencies import build_dependency_graph, detect_cycles
from delivery_planning.errors import PlanningInputError
from delivery_planning.report import (
    allocation_to_dict,
    build_plan_workbook,
    dependency_graph_to_dict,
    plan_to_dict,
    role_load_summary_to_dict,
)
from delivery_planning.role_load import calculate_role_load
from delivery_planning.scheduler import PlanningConfig, PlanningEngine
from delivery_planning.snapshot import parse_date, parse_decimal, parse_role, snapshot_from_payload
from delivery_planning.work_calendar import WeekdayCalendar

# Load environment variables from .env file
load_dotenv()

app = Flask(__name__)
CORS(app)  # Enable CORS for all routes


def env_list(name, default=''):
    return [s.strip() for s in os.getenv(name, default).split(',') if s.strip()]


# CONFIGURATION - Load from environment variables
SERVER_PORT = int(os.getenv('SERVER_PORT', '5050'))
RISK_BUFFER = Decimal(os.getenv('RISK_BUFFER', '0.2'))
DONE_STATUSES = env_list('DONE_STATUSES', 'Done,Closed,Resolved,Killed')
PLANNING_STATUSES = env_list('PLANNING_STATUSES')  # Empty: every status that is not done
ROUGH_ESTIMATE_STATUSES = env_list('ROUGH_ESTIMATE_STATUSES', 'Planned')
HOLIDAYS = [datetime.strptime(s, '%Y-%m-%d').date() for s in env_list('HOLIDAYS')]
GRADE_COEFFICIENTS = {
    'senior': Decimal(os.getenv('GRADE_COEFFICIENT_SENIOR', '0.8')),
    'middle': Decimal(os.getenv('GRADE_COEFFICIENT_MIDDLE', '1.0')),
    'junior': Decimal(os.getenv('GRADE_COEFFICIENT_JUNIOR', '1.5')),
}
ROLE_LOAD_PERIOD_DAYS = int(os.getenv('ROLE_LOAD_PERIOD_DAYS', '30'))


def parse_args():
    """Parse CLI arguments to optionally override environment variables."""
    parser = argparse.ArgumentParser(description='Team delivery planning server')
    parser.add_argument('--server_port', type=int, help='Port to run the server on (defaults to 5050 or SERVER_PORT env)')
    parser.add_argument('--risk_buffer', help='Risk buffer applied to estimates, e.g. 0.2 (overrides RISK_BUFFER env)')
    return parser.parse_args()


def build_engine(payload):
    """Build an engine for one request; "today" may be pinned by the caller."""
    today = parse_date(payload.get('today'), 'today') or date.today()
    risk_buffer = parse_decimal(payload.get('riskBuffer'), 'riskBuffer', RISK_BUFFER)
    config = PlanningConfig(
        calendar=WeekdayCalendar(HOLIDAYS),
        today=today,
        risk_buffer=risk_buffer,
        done_statuses=frozenset(DONE_STATUSES),
        planning_statuses=frozenset(PLANNING_STATUSES) if PLANNING_STATUSES else None,
        rough_estimate_statuses=frozenset(ROUGH_ESTIMATE_STATUSES),
    )
    return PlanningEngine(config)


def read_payload():
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        raise PlanningInputError('Request body must be a JSON object')
    return payload


def input_error(e):
    print(f'⚠️ Rejected planning input: {e}')
    return jsonify({
        'error': 'Invalid planning input',
        'message': str(e)
    }), 400


def server_error(e, what):
    print(f'❌ {what} error: {str(e)}')
    import traceback
    traceback.print_exc()
    return jsonify({
        'error': f'Failed to {what.lower()}',
        'message': str(e)
    }), 500


@app.route('/api/planning', methods=['POST'])
def calculate_plan():
    """Plan the posted team snapshot"""
    try:
        payload = read_payload()
        snapshot = snapshot_from_payload(payload, GRADE_COEFFICIENTS)
        result = build_engine(payload).plan(snapshot)
        print(f'📅 Planned {len(result.epics)} epics, {len(result.warnings)} warnings')
        return jsonify(plan_to_dict(result))
    except PlanningInputError as e:
        return input_error(e)
    except Exception as e:
        return server_error(e, 'Calculate plan')


@app.route('/api/planning/dependencies', methods=['POST'])
def get_dependency_graph():
    """Dependency graph of the posted stories, with any cycle found"""
    try:
        payload = read_payload()
        snapshot = snapshot_from_payload(payload, GRADE_COEFFICIENTS)
        stories = snapshot.stories
        epic_key = payload.get('epicKey')
        if epic_key:
            stories = snapshot.stories_for_epic(epic_key)
        data = dependency_graph_to_dict(build_dependency_graph(stories))
        data['cycle'] = detect_cycles(stories)
        return jsonify(data)
    except PlanningInputError as e:
        return input_error(e)
    except Exception as e:
        return server_error(e, 'Build dependency graph')


@app.route('/api/planning/what-if', methods=['POST'])
def what_if():
    """Where extra work for one role would land after the current backlog"""
    try:
        payload = read_payload()
        snapshot = snapshot_from_payload(payload, GRADE_COEFFICIENTS)
        role = parse_role(payload.get('role'))
        hours = parse_decimal(payload.get('hours'), 'hours')
        if hours is None or hours <= 0:
            raise PlanningInputError('hours must be a positive number')
        projections = build_engine(payload).what_if(snapshot, role, hours)
        return jsonify({
            'role': role.value,
            'hours': float(hours),
            'assignees': {account_id: allocation_to_dict(a) for account_id, a in projections.items()},
        })
    except PlanningInputError as e:
        return input_error(e)
    except Exception as e:
        return server_error(e, 'Project what-if')


@app.route('/api/planning/role-load', methods=['POST'])
def role_load():
    """Capacity against planned hours per role over the coming workdays"""
    try:
        payload = read_payload()
        snapshot = snapshot_from_payload(payload, GRADE_COEFFICIENTS)
        period_days = parse_decimal(payload.get('periodDays'), 'periodDays', Decimal(ROLE_LOAD_PERIOD_DAYS))
        if period_days <= 0 or period_days != period_days.to_integral_value():
            raise PlanningInputError('periodDays must be a positive whole number')
        engine = build_engine(payload)
        result = engine.plan(snapshot)
        summary = calculate_role_load(result, engine.config.calendar, snapshot.absences, int(period_days))
        print(f'📈 Role load over {summary.workdays} workdays, {len(summary.alerts)} alerts')
        return jsonify(role_load_summary_to_dict(summary))
    except PlanningInputError as e:
        return input_error(e)
    except Exception as e:
        return server_error(e, 'Calculate role load')


@app.route('/api/planning/export-excel', methods=['POST'])
def export_excel():
    """Export the plan of the posted snapshot to an Excel file"""
    try:
        payload = read_payload()
        snapshot = snapshot_from_payload(payload, GRADE_COEFFICIENTS)
        result = build_engine(payload).plan(snapshot)

        print(f'\n📊 Exporting plan of {len(result.epics)} epics to Excel...')
        wb = build_plan_workbook(result)

        # Save to BytesIO
        output = io.BytesIO()
        wb.save(output)
        output.seek(0)

        print(f'✅ Excel file generated successfully')

        return send_file(
            output,
            mimetype='application/vnd.openxmlformats-officedocument.spreadsheetml.sheet',
            as_attachment=True,
            download_name=f'delivery_plan_{result.planned_on.strftime("%Y-%m-%d")}.xlsx'
        )
    except PlanningInputError as e:
        return input_error(e)
    except Exception as e:
        return server_error(e, 'Export to Excel')


@app.route('/api/config', methods=['GET'])
def get_config():
    return jsonify({
        'riskBuffer': float(RISK_BUFFER),
        'doneStatuses': DONE_STATUSES,
        'planningStatuses': PLANNING_STATUSES,
        'roughEstimateStatuses': ROUGH_ESTIMATE_STATUSES,
        'holidays': [d.isoformat() for d in HOLIDAYS],
        'roleLoadPeriodDays': ROLE_LOAD_PERIOD_DAYS,
        'gradeCoefficients': {grade: float(c) for grade, c in GRADE_COEFFICIENTS.items()},
    })


@app.route('/health', methods=['GET'])
def health_check():
    return jsonify({
        'status': 'ok',
        'timestamp': datetime.now().isoformat()
    })


if __name__ == '__main__':
    args = parse_args()

    # Apply CLI overrides while keeping env defaults as fallbacks
    if args.server_port:
        SERVER_PORT = args.server_port
    if args.risk_buffer:
        RISK_BUFFER = Decimal(args.risk_buffer)

    print('\n🚀 Planning Server starting...')
    print(f'🛡️ Risk buffer: {RISK_BUFFER}')
    print(f'✅ Done statuses: {", ".join(DONE_STATUSES)}')
    print(f'📝 Rough estimate statuses: {", ".join(ROUGH_ESTIMATE_STATUSES)}')
    print(f'🏖️ Holidays configured: {len(HOLIDAYS)}')
    print('\n📋 Endpoints:')
    print(f'   • POST http://localhost:{SERVER_PORT}/api/planning - Plan a team snapshot')
    print(f'   • POST http://localhost:{SERVER_PORT}/api/planning/dependencies - Story dependency graph')
    print(f'   • POST http://localhost:{SERVER_PORT}/api/planning/what-if - Project extra work for a role')
    print(f'   • POST http://localhost:{SERVER_PORT}/api/planning/role-load - Load per role with alerts')
    print(f'   • POST http://localhost:{SERVER_PORT}/api/planning/export-excel - Download the plan as Excel')
    print(f'   • GET  http://localhost:{SERVER_PORT}/api/config - Planning configuration')
    print(f'   • GET  http://localhost:{SERVER_PORT}/health - Health check')
    print('\n✅ Server ready!\n')

    app.run(host='0.0.0.0', port=SERVER_PORT, debug=True)
