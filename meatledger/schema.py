SCHEMA_SQL = r"""
-- Tenants and people
CREATE TABLE IF NOT EXISTS organizations (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  name TEXT NOT NULL UNIQUE,
  base_currency_code TEXT NOT NULL DEFAULT 'USD'
);

CREATE TABLE IF NOT EXISTS users (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  organization_id INTEGER NOT NULL,
  full_name TEXT NOT NULL,
  is_active INTEGER NOT NULL DEFAULT 1,
  UNIQUE (organization_id, full_name),
  FOREIGN KEY (organization_id) REFERENCES organizations(id)
);

-- Storage / sale locations (cold room, display, POS counter)
CREATE TABLE IF NOT EXISTS zones (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  organization_id INTEGER NOT NULL,
  name TEXT NOT NULL,
  code TEXT NOT NULL,
  zone_type TEXT NOT NULL DEFAULT 'storage',
  is_default_receiving INTEGER NOT NULL DEFAULT 0,
  is_pos_zone INTEGER NOT NULL DEFAULT 0,
  display_order INTEGER NOT NULL DEFAULT 0,
  is_active INTEGER NOT NULL DEFAULT 1,
  UNIQUE (organization_id, code),
  FOREIGN KEY (organization_id) REFERENCES organizations(id)
);

CREATE TABLE IF NOT EXISTS currencies (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  organization_id INTEGER NOT NULL,
  code TEXT NOT NULL,
  name TEXT,
  exchange_rate REAL NOT NULL DEFAULT 1,   -- units of this currency per 1 base unit
  default_opening_float REAL NOT NULL DEFAULT 0,
  is_active INTEGER NOT NULL DEFAULT 1,
  UNIQUE (organization_id, code),
  FOREIGN KEY (organization_id) REFERENCES organizations(id)
);

CREATE TABLE IF NOT EXISTS suppliers (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  organization_id INTEGER NOT NULL,
  name TEXT NOT NULL,
  code TEXT,
  is_active INTEGER NOT NULL DEFAULT 1,
  UNIQUE (organization_id, name),
  FOREIGN KEY (organization_id) REFERENCES organizations(id)
);

CREATE TABLE IF NOT EXISTS grades (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  organization_id INTEGER NOT NULL,
  code TEXT NOT NULL,
  name TEXT NOT NULL,
  expected_yield_percent REAL,
  display_order INTEGER NOT NULL DEFAULT 0,
  UNIQUE (organization_id, code),
  FOREIGN KEY (organization_id) REFERENCES organizations(id)
);

CREATE TABLE IF NOT EXISTS product_categories (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  organization_id INTEGER NOT NULL,
  name TEXT NOT NULL,
  UNIQUE (organization_id, name),
  FOREIGN KEY (organization_id) REFERENCES organizations(id)
);

CREATE TABLE IF NOT EXISTS products (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  organization_id INTEGER NOT NULL,
  category_id INTEGER,
  sku TEXT NOT NULL,
  name TEXT NOT NULL,
  minimum_stock_kg REAL NOT NULL DEFAULT 0,
  reorder_point_kg REAL NOT NULL DEFAULT 0,
  shelf_life_days INTEGER,
  tax_rate_percent REAL,                  -- NULL = use configured VAT
  can_be_sold INTEGER NOT NULL DEFAULT 1,
  is_active INTEGER NOT NULL DEFAULT 1,
  UNIQUE (organization_id, sku),
  FOREIGN KEY (organization_id) REFERENCES organizations(id),
  FOREIGN KEY (category_id) REFERENCES product_categories(id)
);

CREATE TABLE IF NOT EXISTS variance_reasons (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  organization_id INTEGER NOT NULL,
  code TEXT NOT NULL,
  name TEXT NOT NULL,
  category TEXT NOT NULL DEFAULT 'stock', -- stock / cash
  display_order INTEGER NOT NULL DEFAULT 0,
  is_active INTEGER NOT NULL DEFAULT 1,
  UNIQUE (organization_id, code),
  FOREIGN KEY (organization_id) REFERENCES organizations(id)
);

-- Carcass receiving
CREATE TABLE IF NOT EXISTS carcasses (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  organization_id INTEGER NOT NULL,
  carcass_number TEXT NOT NULL,
  supplier_id INTEGER,
  grade_id INTEGER,
  destination_zone_id INTEGER,
  received_at TEXT NOT NULL,
  received_by INTEGER,

  live_weight_kg REAL,
  weight_kg REAL NOT NULL,                -- cold weight, the costing basis
  cost_total REAL NOT NULL DEFAULT 0,
  cost_per_kg REAL NOT NULL DEFAULT 0,

  status TEXT NOT NULL DEFAULT 'pending', -- pending / processing / completed
  total_output_kg REAL NOT NULL DEFAULT 0,
  waste_kg REAL NOT NULL DEFAULT 0,
  yield_percentage REAL NOT NULL DEFAULT 0,
  total_revenue REAL NOT NULL DEFAULT 0,
  realized_margin REAL NOT NULL DEFAULT 0,
  margin_percentage REAL NOT NULL DEFAULT 0,
  notes TEXT,

  UNIQUE (organization_id, carcass_number),
  FOREIGN KEY (organization_id) REFERENCES organizations(id),
  FOREIGN KEY (supplier_id) REFERENCES suppliers(id),
  FOREIGN KEY (grade_id) REFERENCES grades(id),
  FOREIGN KEY (destination_zone_id) REFERENCES zones(id)
);

-- Cutting
CREATE TABLE IF NOT EXISTS cutting_sessions (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  organization_id INTEGER NOT NULL,
  session_number TEXT NOT NULL,
  carcass_id INTEGER,
  butcher_id INTEGER,
  station TEXT,
  status TEXT NOT NULL DEFAULT 'active',  -- active / paused / completed / cancelled
  input_weight_kg REAL NOT NULL DEFAULT 0,
  total_output_kg REAL NOT NULL DEFAULT 0,
  waste_kg REAL NOT NULL DEFAULT 0,
  started_at TEXT NOT NULL,
  started_by INTEGER,
  ended_at TEXT,
  notes TEXT,
  UNIQUE (organization_id, session_number),
  FOREIGN KEY (organization_id) REFERENCES organizations(id),
  FOREIGN KEY (carcass_id) REFERENCES carcasses(id),
  FOREIGN KEY (butcher_id) REFERENCES users(id)
);

CREATE TABLE IF NOT EXISTS cutting_session_cuts (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  session_id INTEGER NOT NULL,
  product_id INTEGER NOT NULL,
  grade_id INTEGER,
  weight_kg REAL NOT NULL,
  quantity INTEGER NOT NULL DEFAULT 0,
  notes TEXT,
  created_at TEXT NOT NULL,
  FOREIGN KEY (session_id) REFERENCES cutting_sessions(id) ON DELETE CASCADE,
  FOREIGN KEY (product_id) REFERENCES products(id),
  FOREIGN KEY (grade_id) REFERENCES grades(id)
);

-- Stock lots
CREATE TABLE IF NOT EXISTS stock (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  organization_id INTEGER NOT NULL,
  product_id INTEGER NOT NULL,
  zone_id INTEGER NOT NULL,
  grade_id INTEGER,
  quantity_kg REAL NOT NULL DEFAULT 0,
  quantity_units INTEGER NOT NULL DEFAULT 0,
  cost_per_kg REAL NOT NULL DEFAULT 0,
  total_cost REAL NOT NULL DEFAULT 0,     -- quantity_kg * cost_per_kg
  batch_number TEXT,
  source_type TEXT NOT NULL,              -- cutting_session / transfer / adjustment / receipt
  source_id INTEGER,
  carcass_id INTEGER,                     -- revenue attribution
  received_at TEXT NOT NULL,
  expires_at TEXT,
  FOREIGN KEY (organization_id) REFERENCES organizations(id),
  FOREIGN KEY (product_id) REFERENCES products(id),
  FOREIGN KEY (zone_id) REFERENCES zones(id),
  FOREIGN KEY (carcass_id) REFERENCES carcasses(id)
);

-- Append-only audit trail; stock_id is a back-reference only
CREATE TABLE IF NOT EXISTS stock_movements (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  organization_id INTEGER NOT NULL,
  stock_id INTEGER,
  movement_type TEXT NOT NULL,            -- transfer / adjustment / sale
  quantity_kg REAL NOT NULL,              -- signed delta
  quantity_units INTEGER NOT NULL DEFAULT 0,
  from_zone_id INTEGER,
  to_zone_id INTEGER,
  reason TEXT,
  reference_type TEXT,
  reference_id INTEGER,
  performed_by INTEGER,
  created_at TEXT NOT NULL,
  FOREIGN KEY (organization_id) REFERENCES organizations(id)
);

-- Sales
CREATE TABLE IF NOT EXISTS sales (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  organization_id INTEGER NOT NULL,
  sale_number TEXT NOT NULL,
  sale_date TEXT NOT NULL,                -- ISO date
  sold_at TEXT NOT NULL,                  -- ISO datetime
  cashier_id INTEGER,
  zone_id INTEGER NOT NULL,

  subtotal REAL NOT NULL DEFAULT 0,
  discount_amount REAL NOT NULL DEFAULT 0,
  discount_reason TEXT,
  tax_amount REAL NOT NULL DEFAULT 0,
  total_amount REAL NOT NULL DEFAULT 0,
  total_weight_kg REAL NOT NULL DEFAULT 0,
  total_cost REAL NOT NULL DEFAULT 0,
  margin_amount REAL NOT NULL DEFAULT 0,
  margin_percent REAL NOT NULL DEFAULT 0,

  payment_status TEXT NOT NULL DEFAULT 'unpaid', -- unpaid / partial / paid
  amount_paid REAL NOT NULL DEFAULT 0,           -- base currency
  change_given REAL NOT NULL DEFAULT 0,

  status TEXT NOT NULL DEFAULT 'completed',      -- completed / voided
  void_reason TEXT,
  voided_at TEXT,
  voided_by INTEGER,

  customer_name TEXT,
  customer_phone TEXT,
  notes TEXT,
  UNIQUE (organization_id, sale_number),
  FOREIGN KEY (organization_id) REFERENCES organizations(id),
  FOREIGN KEY (zone_id) REFERENCES zones(id)
);

CREATE TABLE IF NOT EXISTS sale_items (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  sale_id INTEGER NOT NULL,
  product_id INTEGER NOT NULL,
  quantity_kg REAL NOT NULL,
  unit_price REAL NOT NULL,
  line_subtotal REAL NOT NULL,
  line_discount REAL NOT NULL DEFAULT 0,
  line_total REAL NOT NULL,
  tax_rate_percent REAL NOT NULL,
  tax_amount REAL NOT NULL,
  unit_cost REAL NOT NULL DEFAULT 0,
  FOREIGN KEY (sale_id) REFERENCES sales(id) ON DELETE CASCADE,
  FOREIGN KEY (product_id) REFERENCES products(id)
);

-- Which lot each sold kilogram came from (so a void restores exact lots)
CREATE TABLE IF NOT EXISTS sale_item_allocations (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  sale_item_id INTEGER NOT NULL,
  stock_id INTEGER NOT NULL,
  quantity_kg REAL NOT NULL,
  quantity_units INTEGER NOT NULL DEFAULT 0,
  cost_per_kg REAL NOT NULL,
  carcass_id INTEGER,
  revenue REAL NOT NULL DEFAULT 0,
  FOREIGN KEY (sale_item_id) REFERENCES sale_items(id) ON DELETE CASCADE,
  FOREIGN KEY (stock_id) REFERENCES stock(id)
);

CREATE TABLE IF NOT EXISTS sale_payments (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  sale_id INTEGER NOT NULL,
  payment_method TEXT NOT NULL,           -- cash / card / mobile / ...
  currency_code TEXT NOT NULL,
  amount REAL NOT NULL,
  exchange_rate REAL NOT NULL DEFAULT 1,
  amount_base REAL NOT NULL,
  tendered REAL,
  change_amount REAL,
  reference TEXT,
  status TEXT NOT NULL DEFAULT 'completed',
  created_at TEXT NOT NULL,
  FOREIGN KEY (sale_id) REFERENCES sales(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS held_sales (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  organization_id INTEGER NOT NULL,
  zone_id INTEGER NOT NULL,
  items TEXT NOT NULL,                    -- JSON cart snapshot
  subtotal REAL NOT NULL DEFAULT 0,
  total_weight_kg REAL NOT NULL DEFAULT 0,
  customer_name TEXT,
  customer_phone TEXT,
  notes TEXT,
  status TEXT NOT NULL DEFAULT 'held',    -- held / recalled
  held_by INTEGER,
  held_at TEXT NOT NULL,
  recalled_by INTEGER,
  recalled_at TEXT,
  version INTEGER NOT NULL DEFAULT 1,
  FOREIGN KEY (organization_id) REFERENCES organizations(id),
  FOREIGN KEY (zone_id) REFERENCES zones(id)
);

-- Daily closing
CREATE TABLE IF NOT EXISTS daily_closings (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  organization_id INTEGER NOT NULL,
  closing_date TEXT NOT NULL,
  status TEXT NOT NULL DEFAULT 'in_progress', -- in_progress / completed
  started_at TEXT NOT NULL,
  started_by INTEGER,
  completed_at TEXT,
  completed_by INTEGER,

  total_sales REAL NOT NULL DEFAULT 0,
  transaction_count INTEGER NOT NULL DEFAULT 0,
  total_weight_sold_kg REAL NOT NULL DEFAULT 0,

  expected_stock_kg REAL NOT NULL DEFAULT 0,
  actual_stock_kg REAL NOT NULL DEFAULT 0,
  stock_variance_kg REAL NOT NULL DEFAULT 0,
  stock_variance_percent REAL NOT NULL DEFAULT 0,
  stock_variance_value REAL NOT NULL DEFAULT 0,

  -- cash across all currencies, converted to the base currency
  expected_cash_base REAL NOT NULL DEFAULT 0,
  actual_cash_base REAL NOT NULL DEFAULT 0,
  cash_variance_base REAL NOT NULL DEFAULT 0,
  notes TEXT,
  UNIQUE (organization_id, closing_date),
  FOREIGN KEY (organization_id) REFERENCES organizations(id)
);

CREATE TABLE IF NOT EXISTS stock_counts (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  daily_closing_id INTEGER NOT NULL,
  zone_id INTEGER NOT NULL,
  status TEXT NOT NULL DEFAULT 'pending', -- pending / completed
  expected_total_kg REAL NOT NULL DEFAULT 0,
  actual_total_kg REAL NOT NULL DEFAULT 0,
  variance_kg REAL NOT NULL DEFAULT 0,
  variance_value REAL NOT NULL DEFAULT 0,
  total_items INTEGER NOT NULL DEFAULT 0,
  items_counted INTEGER NOT NULL DEFAULT 0,
  items_with_variance INTEGER NOT NULL DEFAULT 0,
  completed_at TEXT,
  completed_by INTEGER,
  UNIQUE (daily_closing_id, zone_id),
  FOREIGN KEY (daily_closing_id) REFERENCES daily_closings(id) ON DELETE CASCADE,
  FOREIGN KEY (zone_id) REFERENCES zones(id)
);

CREATE TABLE IF NOT EXISTS stock_count_items (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  stock_count_id INTEGER NOT NULL,
  product_id INTEGER NOT NULL,
  expected_kg REAL NOT NULL DEFAULT 0,
  expected_value REAL NOT NULL DEFAULT 0,
  actual_kg REAL,
  is_counted INTEGER NOT NULL DEFAULT 0,
  variance_kg REAL,
  variance_percent REAL,
  variance_value REAL,
  variance_reason TEXT,
  variance_notes TEXT,
  counted_at TEXT,
  counted_by INTEGER,
  version INTEGER NOT NULL DEFAULT 1,
  UNIQUE (stock_count_id, product_id),
  FOREIGN KEY (stock_count_id) REFERENCES stock_counts(id) ON DELETE CASCADE,
  FOREIGN KEY (product_id) REFERENCES products(id)
);

CREATE TABLE IF NOT EXISTS cash_counts (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  daily_closing_id INTEGER NOT NULL,
  currency_code TEXT NOT NULL,
  opening_float REAL NOT NULL DEFAULT 0,
  cash_sales REAL NOT NULL DEFAULT 0,
  expected_total REAL NOT NULL DEFAULT 0,
  counted_total REAL NOT NULL DEFAULT 0,
  variance REAL NOT NULL DEFAULT 0,
  counted_at TEXT,
  counted_by INTEGER,
  notes TEXT,
  version INTEGER NOT NULL DEFAULT 1,
  UNIQUE (daily_closing_id, currency_code),
  FOREIGN KEY (daily_closing_id) REFERENCES daily_closings(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS cash_denominations (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  cash_count_id INTEGER NOT NULL,
  denomination REAL NOT NULL,
  count INTEGER NOT NULL,
  total REAL NOT NULL,
  FOREIGN KEY (cash_count_id) REFERENCES cash_counts(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS ix_stock_product_zone ON stock(organization_id, product_id, zone_id);
CREATE INDEX IF NOT EXISTS ix_sales_date ON sales(organization_id, sale_date);
CREATE INDEX IF NOT EXISTS ix_movements_stock ON stock_movements(stock_id);
"""
