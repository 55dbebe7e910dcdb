"""
Constants used throughout the OData Hub library.
"""

SAP_NAMESPACE = 'http://www.sap.com/Protocols/SAPData'

# Keyword heuristics per category, split by the service field they are tested against.
# A service gets a tag when any keyword occurs in the lowercased field.
CATEGORY_KEYWORDS = {
    'business-partner': {
        'id': ['business_partner', 'bp_', 'customer', 'supplier'],
        'title': ['business partner', 'customer', 'supplier'],
        'description': [],
    },
    'sales': {
        'id': ['sales', 'order', 'quotation', 'opportunity'],
        'title': ['sales', 'order'],
        'description': ['sales'],
    },
    'finance': {
        'id': ['finance', 'accounting', 'payment', 'invoice', 'gl_', 'ar_', 'ap_'],
        'title': ['finance', 'accounting', 'payment'],
        'description': [],
    },
    'procurement': {
        'id': ['purchase', 'procurement', 'vendor', 'po_'],
        'title': ['procurement', 'purchase', 'vendor'],
        'description': [],
    },
    'hr': {
        'id': ['employee', 'hr_', 'personnel', 'payroll'],
        'title': ['employee', 'human', 'personnel'],
        'description': [],
    },
    'logistics': {
        'id': ['logistics', 'warehouse', 'inventory', 'material', 'wm_', 'mm_'],
        'title': ['logistics', 'material'],
        'description': [],
    },
}

# Relevance scores used by the discovery engine
SERVICE_ID_SCORE = 0.9
SERVICE_TITLE_SCORE = 0.85
SERVICE_DESCRIPTION_SCORE = 0.7
SERVICE_DEFAULT_SCORE = 0.5
ENTITY_NAME_SCORE = 0.95
PROPERTY_NAME_SCORE = 0.75

DEFAULT_LIMIT = 10
MAX_LIMIT = 20

DEFAULT_DESTINATION_NAME = 'SAP_SYSTEM'

# SAP Gateway catalog service used when no explicit service list is configured
GATEWAY_CATALOG_PATH = '/sap/opu/odata/IWFND/CATALOGSERVICE;v=2'

USER_AGENT = 'OData-Hub-MCP/1.0'
